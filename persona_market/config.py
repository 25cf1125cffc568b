"""Engine configuration helpers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

WALLET_MODES = {"sandbox", "algod"}
STORAGE_BACKENDS = {"postgres", "memory"}


@dataclass(frozen=True)
class EngineConfig:
    """Settings for storage, the wallet ledger and background reconciliation."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    storage_backend: str
    wallet_mode: str
    wallet_ledger_url: str
    wallet_ledger_token: str
    wallet_request_timeout: float
    confirmation_timeout: float
    confirmation_poll_interval: float
    reconcile_enabled: bool
    reconcile_interval: float
    reconcile_confirmation_timeout: float
    stale_attempt_seconds: int
    fiat_rate: Decimal
    fiat_currency: str
    minor_units_per_unit: int
    fallback_store_path: Optional[str]
    broadcast_queue_size: int
    sandbox_default_balance: int = 0
    sandbox_balances: Dict[str, int] = field(default_factory=dict)

    @property
    def db_settings(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`psycopg2.connect`."""

        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: str) -> Decimal:
    raw = default if value is None or value == "" else value
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def _parse_balances(raw_value: Optional[str]) -> Dict[str, int]:
    """Parse ``wallet=amount,wallet=amount`` pairs used to seed the sandbox ledger."""

    balances: Dict[str, int] = {}
    for chunk in (raw_value or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        wallet, sep, amount = chunk.partition("=")
        if not sep or not wallet.strip():
            raise ValueError(f"Expected wallet=amount, got {chunk!r}")
        balances[wallet.strip()] = _to_int(amount.strip(), default=0)
    return balances


def _choice(value: Optional[str], *, allowed: set, default: str, name: str) -> str:
    chosen = (value or default).strip().lower() or default
    if chosen not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return chosen


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    minor_units_per_unit = _to_int(env_mapping.get("MINOR_UNITS_PER_UNIT"), default=1_000_000)
    if minor_units_per_unit <= 0:
        raise ValueError("MINOR_UNITS_PER_UNIT must be positive")

    return EngineConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "persona_market"),
        db_user=env_mapping.get("DB_USER", "persona_user"),
        db_password=env_mapping.get("DB_PASSWORD", "persona_pass"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        storage_backend=_choice(
            env_mapping.get("STORAGE_BACKEND"), allowed=STORAGE_BACKENDS, default="postgres", name="STORAGE_BACKEND"
        ),
        wallet_mode=_choice(env_mapping.get("WALLET_MODE"), allowed=WALLET_MODES, default="sandbox", name="WALLET_MODE"),
        wallet_ledger_url=env_mapping.get("WALLET_LEDGER_URL", "https://testnet-api.algonode.cloud"),
        wallet_ledger_token=env_mapping.get("WALLET_LEDGER_TOKEN", ""),
        wallet_request_timeout=max(0.1, _to_float(env_mapping.get("WALLET_REQUEST_TIMEOUT"), default=10.0)),
        confirmation_timeout=max(0.0, _to_float(env_mapping.get("CONFIRMATION_TIMEOUT_SECONDS"), default=20.0)),
        confirmation_poll_interval=max(0.05, _to_float(env_mapping.get("CONFIRMATION_POLL_INTERVAL"), default=1.0)),
        reconcile_enabled=_to_bool(env_mapping.get("RECONCILE_ENABLED"), default=True),
        reconcile_interval=max(1.0, _to_float(env_mapping.get("RECONCILE_INTERVAL_SECONDS"), default=60.0)),
        reconcile_confirmation_timeout=max(
            0.0, _to_float(env_mapping.get("RECONCILE_CONFIRMATION_TIMEOUT"), default=2.0)
        ),
        stale_attempt_seconds=max(0, _to_int(env_mapping.get("STALE_ATTEMPT_SECONDS"), default=900)),
        fiat_rate=_to_decimal(env_mapping.get("FIAT_RATE"), default="0.25"),
        fiat_currency=(env_mapping.get("FIAT_CURRENCY") or "USD").strip().upper(),
        minor_units_per_unit=minor_units_per_unit,
        fallback_store_path=env_mapping.get("FALLBACK_STORE_PATH") or None,
        broadcast_queue_size=max(1, _to_int(env_mapping.get("BROADCAST_QUEUE_SIZE"), default=1000)),
        sandbox_default_balance=max(0, _to_int(env_mapping.get("SANDBOX_DEFAULT_BALANCE"), default=100_000_000)),
        sandbox_balances=_parse_balances(env_mapping.get("SANDBOX_BALANCES")),
    )


__all__ = ["EngineConfig", "load_engine_config"]
