from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.extras
import pytest

from persona_market.app.catalog import PayloadDescriptor, PayloadKind, Service
from persona_market.app.entitlements import CapabilityClass
from persona_market.app.errors import ConflictError, StorageUnavailable
from persona_market.app.settlement import PaymentAttemptStatus
from persona_market.app.storage import postgres as postgres_storage
from persona_market.app.storage import (
    PostgresAttemptRepository,
    PostgresCatalogRepository,
    PostgresEntitlementRepository,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeCursor:
    def __init__(self, connection: "_FakeConnection") -> None:
        self._connection = connection
        self.rowcount = 0
        self.closed = False

    def execute(self, query: str, params: Any = None) -> None:
        sql = " ".join(query.strip().split())
        self._connection.executed.append((sql, params))
        if self._connection.error is not None:
            raise self._connection.error
        self.rowcount = self._connection.rowcount

    def fetchone(self) -> Optional[Dict[str, Any]]:
        rows = self._connection.rows
        return rows[0] if rows else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return list(self._connection.rows)

    def close(self) -> None:
        self.closed = True


class _FakeConnection:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.rows = rows or []
        self.rowcount = len(self.rows)
        self.error: Optional[Exception] = None
        self.executed: List[Any] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None) -> _FakeCursor:
        return _FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


def _service_row(**overrides) -> Dict[str, Any]:
    row = {
        "service_id": "svc_1",
        "owner_persona_id": "persona-1",
        "owner_wallet": "SELLERWALLET",
        "name": "Voice note",
        "description": "",
        "price_minor_unit": 2_000_000,
        "capability_class": "voice_message",
        "payload": {"kind": "url", "content": "https://cdn.example/a.mp3", "file_type": "audio/mpeg"},
        "auto_deliver": True,
        "duration_minutes": 5,
        "is_active": True,
        "tombstoned": False,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _attempt_row(**overrides) -> Dict[str, Any]:
    row = {
        "attempt_id": "pay_1",
        "service_id": "svc_1",
        "buyer_wallet": "BUYERWALLET",
        "seller_wallet": "SELLERWALLET",
        "amount_requested": 2_000_000,
        "capability_class": "consultation",
        "owner_persona_id": "persona-1",
        "status": "pending",
        "external_ref": None,
        "confirmed_round": None,
        "failure_reason": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _entitlement_row(**overrides) -> Dict[str, Any]:
    row = {
        "entitlement_id": "ent_1",
        "service_id": "svc_1",
        "persona_id": "persona-1",
        "buyer_wallet": "BUYERWALLET",
        "capability_class": "consultation",
        "usage_count": 1,
        "max_usage": 1,
        "expires_at": None,
        "granted_from_attempt_id": "pay_1",
        "amount_paid_minor_unit": 2_000_000,
        "granted_at": NOW,
    }
    row.update(overrides)
    return row


def test_save_service_upserts_with_json_payload() -> None:
    conn = _FakeConnection([_service_row()])
    repository = PostgresCatalogRepository(conn=conn)
    service = Service(
        service_id="svc_1",
        owner_persona_id="persona-1",
        owner_wallet="SELLERWALLET",
        name="Voice note",
        price_minor_unit=2_000_000,
        capability_class=CapabilityClass.VOICE_MESSAGE,
        payload=PayloadDescriptor(kind=PayloadKind.URL, content="https://cdn.example/a.mp3", file_type="audio/mpeg"),
        auto_deliver=True,
        duration_minutes=5,
        created_at=NOW,
        updated_at=NOW,
    )

    stored = repository.save_service(service)

    sql, params = conn.executed[0]
    assert sql.startswith("INSERT INTO services")
    assert "ON CONFLICT (service_id) DO UPDATE SET" in sql
    assert isinstance(params["payload"], psycopg2.extras.Json)
    assert params["capability_class"] == "voice_message"
    assert stored.payload.kind == PayloadKind.URL
    assert stored.degraded is False
    assert conn.commits == 0


def test_list_services_builds_filters() -> None:
    conn = _FakeConnection([_service_row(), _service_row(service_id="svc_2")])
    repository = PostgresCatalogRepository(conn=conn)

    services = repository.list_services(owner_persona_id="persona-1", active_only=True)

    sql, params = conn.executed[0]
    assert "WHERE owner_persona_id = %(owner_persona_id)s AND is_active AND NOT tombstoned" in sql
    assert params == {"owner_persona_id": "persona-1"}
    assert [service.service_id for service in services] == ["svc_1", "svc_2"]


def test_delete_service_reports_rowcount() -> None:
    conn = _FakeConnection()
    repository = PostgresCatalogRepository(conn=conn)

    assert repository.delete_service("svc_missing") is False
    assert conn.executed[0] == ("DELETE FROM services WHERE service_id = %s", ("svc_missing",))


def test_resolve_attempt_only_updates_pending_rows() -> None:
    conn = _FakeConnection([_attempt_row(status="confirmed", external_ref="TX1", confirmed_round=42)])
    repository = PostgresAttemptRepository(conn=conn)

    resolved = repository.resolve_attempt(
        "pay_1",
        status=PaymentAttemptStatus.CONFIRMED,
        now=NOW,
        confirmed_round=42,
    )

    sql, params = conn.executed[0]
    assert "WHERE attempt_id = %(attempt_id)s AND status = 'pending' RETURNING *" in sql
    assert params["status"] == "confirmed"
    assert resolved.status == PaymentAttemptStatus.CONFIRMED
    assert resolved.confirmed_round == 42


def test_resolve_attempt_returns_none_when_already_resolved() -> None:
    repository = PostgresAttemptRepository(conn=_FakeConnection())

    assert repository.resolve_attempt("pay_1", status=PaymentAttemptStatus.FAILED, now=NOW) is None


def test_list_pending_attempts_filters_pair() -> None:
    conn = _FakeConnection([_attempt_row()])
    repository = PostgresAttemptRepository(conn=conn)

    attempts = repository.list_pending_attempts(service_id="svc_1", buyer_wallet="BUYERWALLET")

    sql, params = conn.executed[0]
    assert "WHERE status = 'pending' AND service_id = %(service_id)s AND buyer_wallet = %(buyer_wallet)s" in sql
    assert params == {"service_id": "svc_1", "buyer_wallet": "BUYERWALLET"}
    assert attempts[0].is_unresolved


def test_save_entitlement_is_idempotent_per_attempt() -> None:
    conn = _FakeConnection([_entitlement_row()])
    repository = PostgresEntitlementRepository(conn=conn)

    stored = repository.save_entitlement(postgres_storage._row_to_entitlement(_entitlement_row()))

    sql, _ = conn.executed[0]
    assert "ON CONFLICT (granted_from_attempt_id) DO UPDATE SET" in sql
    assert "GREATEST(entitlements.usage_count, EXCLUDED.usage_count)" in sql
    assert stored.entitlement_id == "ent_1"


def test_increment_usage_is_a_guarded_update() -> None:
    conn = _FakeConnection()
    repository = PostgresEntitlementRepository(conn=conn)

    assert repository.increment_usage("ent_1", now=NOW) is None

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE entitlements SET usage_count = usage_count + 1")
    assert "(max_usage IS NULL OR usage_count < max_usage)" in sql
    assert "(expires_at IS NULL OR expires_at > %(now)s)" in sql
    assert params == {"entitlement_id": "ent_1", "now": NOW}


def test_row_mapping_keeps_expiry() -> None:
    expires_at = NOW + timedelta(days=30)
    conn = _FakeConnection([_entitlement_row(capability_class="video_call", max_usage=None, expires_at=expires_at)])
    repository = PostgresEntitlementRepository(conn=conn)

    entitlement = repository.get_entitlement("ent_1")

    assert entitlement.capability_class == CapabilityClass.VIDEO_CALL
    assert entitlement.max_usage is None
    assert entitlement.expires_at == expires_at


def test_unreachable_database_raises_storage_unavailable(monkeypatch) -> None:
    def refuse():
        raise psycopg2.OperationalError("could not connect to server")

    monkeypatch.setattr(postgres_storage, "get_conn", refuse)

    with pytest.raises(StorageUnavailable) as exc_info:
        PostgresCatalogRepository().get_service("svc_1")

    assert "could not connect" in exc_info.value.detail["cause"]


def test_managed_connection_rolls_back_on_integrity_error(monkeypatch) -> None:
    conn = _FakeConnection()
    conn.error = psycopg2.IntegrityError("duplicate key")
    monkeypatch.setattr(postgres_storage, "get_conn", lambda: conn)

    with pytest.raises(ConflictError):
        PostgresAttemptRepository().save_attempt(postgres_storage._row_to_attempt(_attempt_row()))

    assert conn.rollbacks >= 1
    assert conn.commits == 0
    assert conn.closed is True


def test_upsert_without_returned_row_raises_storage_unavailable() -> None:
    conn = _FakeConnection([])
    repository = PostgresAttemptRepository(conn=conn)

    with pytest.raises(StorageUnavailable) as exc_info:
        repository.save_attempt(postgres_storage._row_to_attempt(_attempt_row()))

    assert "no row" in exc_info.value.message


def test_schema_allows_one_pending_attempt_per_pair() -> None:
    schema = (Path(__file__).resolve().parents[1] / "sql" / "schema.sql").read_text(encoding="utf-8")
    statement = " ".join(schema.split("payment_attempts_pending_idx")[0].split()[-6:])

    assert statement == "CREATE UNIQUE INDEX IF NOT EXISTS"
    assert "WHERE status = 'pending'" in schema
