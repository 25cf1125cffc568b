"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_payment_signer: Optional[Any] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    payment_signer: Optional[Any] = None,
) -> None:
    """Register application-wide dependencies required by the engine wiring."""

    global _get_conn
    global _payment_signer

    _get_conn = get_conn
    if payment_signer is not None:
        _payment_signer = payment_signer


def configure_payment_signer(signer: Any) -> None:
    """Install the signer that produces wallet-signed transactions for algod mode."""

    global _payment_signer
    _payment_signer = signer


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_payment_signer() -> Any:
    return _require(_payment_signer, "payment_signer")
