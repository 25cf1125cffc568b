"""Change broadcast bus and refetching consumers."""

from .bus import BroadcastSubscription, ChangeBroadcastBus, ChangePublisher, EventPredicate, for_entity
from .consumers import RefetchingConsumer
from .models import ChangeEvent, EntityKind, Mutation

__all__ = [
    "BroadcastSubscription",
    "ChangeBroadcastBus",
    "ChangeEvent",
    "ChangePublisher",
    "EntityKind",
    "EventPredicate",
    "Mutation",
    "RefetchingConsumer",
    "for_entity",
]
