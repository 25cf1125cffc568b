"""Delivery gate guarding payload disclosure."""

from .models import DeliveredPayload
from .service import DeliveryGate

__all__ = ["DeliveredPayload", "DeliveryGate"]
