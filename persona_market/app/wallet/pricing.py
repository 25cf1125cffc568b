"""Minor-unit price arithmetic and display-only fiat estimates."""
from __future__ import annotations

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

DEFAULT_MINOR_UNITS_PER_UNIT = 1_000_000

Number = Union[int, float, str, Decimal]


def to_minor_units(amount: Number, *, minor_units_per_unit: int = DEFAULT_MINOR_UNITS_PER_UNIT) -> int:
    """Convert a whole-unit amount (e.g. ``"2.5"`` ALGO) to integer minor units."""

    scaled = Decimal(str(amount)) * minor_units_per_unit
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_whole_units(minor: int, *, minor_units_per_unit: int = DEFAULT_MINOR_UNITS_PER_UNIT) -> Decimal:
    return Decimal(minor) / Decimal(minor_units_per_unit)


def estimate_fiat(
    price_minor_unit: int,
    *,
    rate: Number,
    minor_units_per_unit: int = DEFAULT_MINOR_UNITS_PER_UNIT,
) -> Decimal:
    """Informational fiat value of a price; never stored or charged."""

    whole = to_whole_units(price_minor_unit, minor_units_per_unit=minor_units_per_unit)
    return (whole * Decimal(str(rate))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def build_payment_note(*, attempt_id: str, service_id: str, service_name: str, timestamp: datetime) -> bytes:
    """Note attached to the ledger transaction so it can be traced to its attempt."""

    note = {
        "type": "persona_service_payment",
        "attempt_id": attempt_id,
        "service_id": service_id,
        "service_name": service_name,
        "timestamp": timestamp.isoformat(),
    }
    return json.dumps(note, sort_keys=True, separators=(",", ":")).encode("utf-8")
