"""PostgreSQL persistence for services, payment attempts and entitlements."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..catalog.models import PayloadDescriptor, Service
from ..entitlements.models import CapabilityClass, Entitlement
from ..errors import ConflictError, StorageUnavailable
from ..settlement.models import PaymentAttempt, PaymentAttemptStatus


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_service(row: dict) -> Service:
    payload = row.get("payload")
    return Service(
        service_id=row["service_id"],
        owner_persona_id=row["owner_persona_id"],
        owner_wallet=row["owner_wallet"],
        name=row["name"],
        description=row.get("description") or "",
        price_minor_unit=int(row["price_minor_unit"]),
        capability_class=CapabilityClass(row["capability_class"]),
        payload=PayloadDescriptor.model_validate(payload) if payload else None,
        auto_deliver=bool(row.get("auto_deliver")),
        duration_minutes=row.get("duration_minutes"),
        is_active=bool(row["is_active"]),
        tombstoned=bool(row.get("tombstoned")),
        degraded=False,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_attempt(row: dict) -> PaymentAttempt:
    return PaymentAttempt(
        attempt_id=row["attempt_id"],
        service_id=row["service_id"],
        buyer_wallet=row["buyer_wallet"],
        seller_wallet=row["seller_wallet"],
        amount_requested=int(row["amount_requested"]),
        capability_class=CapabilityClass(row["capability_class"]),
        owner_persona_id=row["owner_persona_id"],
        status=PaymentAttemptStatus(row["status"]),
        external_ref=row.get("external_ref"),
        confirmed_round=row.get("confirmed_round"),
        failure_reason=row.get("failure_reason"),
        degraded=False,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entitlement(row: dict) -> Entitlement:
    max_usage = row.get("max_usage")
    return Entitlement(
        entitlement_id=row["entitlement_id"],
        service_id=row["service_id"],
        persona_id=row["persona_id"],
        buyer_wallet=row["buyer_wallet"],
        capability_class=CapabilityClass(row["capability_class"]),
        usage_count=int(row["usage_count"]),
        max_usage=int(max_usage) if max_usage is not None else None,
        expires_at=row.get("expires_at"),
        granted_from_attempt_id=row["granted_from_attempt_id"],
        amount_paid_minor_unit=int(row.get("amount_paid_minor_unit") or 0),
        granted_at=row["granted_at"],
        degraded=False,
    )


class _PostgresRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise StorageUnavailable("Durable storage is unreachable", detail={"cause": str(exc)}) from exc
        except psycopg2.IntegrityError as exc:
            raise ConflictError("Record conflicts with existing data", detail={"cause": str(exc)}) from exc


class PostgresCatalogRepository(_PostgresRepository):
    """Concrete repository persisting services in PostgreSQL."""

    def save_service(self, service: Service) -> Service:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO services (
                    service_id,
                    owner_persona_id,
                    owner_wallet,
                    name,
                    description,
                    price_minor_unit,
                    capability_class,
                    payload,
                    auto_deliver,
                    duration_minutes,
                    is_active,
                    tombstoned,
                    created_at,
                    updated_at
                )
                VALUES (%(service_id)s, %(owner_persona_id)s, %(owner_wallet)s, %(name)s,
                        %(description)s, %(price_minor_unit)s, %(capability_class)s, %(payload)s,
                        %(auto_deliver)s, %(duration_minutes)s, %(is_active)s, %(tombstoned)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (service_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    price_minor_unit = EXCLUDED.price_minor_unit,
                    payload = EXCLUDED.payload,
                    auto_deliver = EXCLUDED.auto_deliver,
                    duration_minutes = EXCLUDED.duration_minutes,
                    is_active = EXCLUDED.is_active,
                    tombstoned = EXCLUDED.tombstoned,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "service_id": service.service_id,
                    "owner_persona_id": service.owner_persona_id,
                    "owner_wallet": service.owner_wallet,
                    "name": service.name,
                    "description": service.description,
                    "price_minor_unit": service.price_minor_unit,
                    "capability_class": service.capability_class.value,
                    "payload": psycopg2.extras.Json(service.payload.model_dump(mode="json"))
                    if service.payload
                    else None,
                    "auto_deliver": service.auto_deliver,
                    "duration_minutes": service.duration_minutes,
                    "is_active": service.is_active,
                    "tombstoned": service.tombstoned,
                    "created_at": service.created_at,
                    "updated_at": service.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise StorageUnavailable("Database returned no row after saving service")
            return _row_to_service(row)

    def get_service(self, service_id: str) -> Optional[Service]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM services
                WHERE service_id = %s
                LIMIT 1
                """,
                (service_id,),
            )
            row = cursor.fetchone()
            return _row_to_service(row) if row else None

    def list_services(
        self,
        *,
        owner_persona_id: Optional[str] = None,
        active_only: bool = False,
    ) -> Sequence[Service]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if owner_persona_id is not None:
            clauses.append("owner_persona_id = %(owner_persona_id)s")
            params["owner_persona_id"] = owner_persona_id
        if active_only:
            clauses.append("is_active AND NOT tombstoned")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM services
                {where}
                ORDER BY created_at DESC
                """,
                params,
            )
            return [_row_to_service(row) for row in cursor.fetchall()]

    def delete_service(self, service_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM services WHERE service_id = %s", (service_id,))
            return cursor.rowcount > 0


class PostgresAttemptRepository(_PostgresRepository):
    """Payment attempts; status leaves ``pending`` through a conditional update only."""

    def save_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payment_attempts (
                    attempt_id,
                    service_id,
                    buyer_wallet,
                    seller_wallet,
                    amount_requested,
                    capability_class,
                    owner_persona_id,
                    status,
                    external_ref,
                    confirmed_round,
                    failure_reason,
                    created_at,
                    updated_at
                )
                VALUES (%(attempt_id)s, %(service_id)s, %(buyer_wallet)s, %(seller_wallet)s,
                        %(amount_requested)s, %(capability_class)s, %(owner_persona_id)s,
                        %(status)s, %(external_ref)s, %(confirmed_round)s, %(failure_reason)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (attempt_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    external_ref = EXCLUDED.external_ref,
                    confirmed_round = EXCLUDED.confirmed_round,
                    failure_reason = EXCLUDED.failure_reason,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "attempt_id": attempt.attempt_id,
                    "service_id": attempt.service_id,
                    "buyer_wallet": attempt.buyer_wallet,
                    "seller_wallet": attempt.seller_wallet,
                    "amount_requested": attempt.amount_requested,
                    "capability_class": attempt.capability_class.value,
                    "owner_persona_id": attempt.owner_persona_id,
                    "status": attempt.status.value,
                    "external_ref": attempt.external_ref,
                    "confirmed_round": attempt.confirmed_round,
                    "failure_reason": attempt.failure_reason,
                    "created_at": attempt.created_at,
                    "updated_at": attempt.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise StorageUnavailable("Database returned no row after saving payment attempt")
            return _row_to_attempt(row)

    def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM payment_attempts
                WHERE attempt_id = %s
                LIMIT 1
                """,
                (attempt_id,),
            )
            row = cursor.fetchone()
            return _row_to_attempt(row) if row else None

    def record_submission(self, attempt_id: str, external_ref: str, *, now: datetime) -> Optional[PaymentAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payment_attempts
                SET external_ref = %(external_ref)s,
                    updated_at = %(now)s
                WHERE attempt_id = %(attempt_id)s
                  AND status = 'pending'
                RETURNING *
                """,
                {"attempt_id": attempt_id, "external_ref": external_ref, "now": now},
            )
            row = cursor.fetchone()
            return _row_to_attempt(row) if row else None

    def resolve_attempt(
        self,
        attempt_id: str,
        *,
        status: PaymentAttemptStatus,
        now: datetime,
        confirmed_round: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payment_attempts
                SET status = %(status)s,
                    confirmed_round = %(confirmed_round)s,
                    failure_reason = %(failure_reason)s,
                    updated_at = %(now)s
                WHERE attempt_id = %(attempt_id)s
                  AND status = 'pending'
                RETURNING *
                """,
                {
                    "attempt_id": attempt_id,
                    "status": status.value,
                    "confirmed_round": confirmed_round,
                    "failure_reason": failure_reason,
                    "now": now,
                },
            )
            row = cursor.fetchone()
            return _row_to_attempt(row) if row else None

    def list_pending_attempts(
        self,
        *,
        service_id: Optional[str] = None,
        buyer_wallet: Optional[str] = None,
    ) -> Sequence[PaymentAttempt]:
        clauses = ["status = 'pending'"]
        params: Dict[str, Any] = {}
        if service_id is not None:
            clauses.append("service_id = %(service_id)s")
            params["service_id"] = service_id
        if buyer_wallet is not None:
            clauses.append("buyer_wallet = %(buyer_wallet)s")
            params["buyer_wallet"] = buyer_wallet
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM payment_attempts
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at ASC
                """,
                params,
            )
            return [_row_to_attempt(row) for row in cursor.fetchall()]


class PostgresEntitlementRepository(_PostgresRepository):
    """Entitlements; usage is bumped with a single guarded ``UPDATE``."""

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO entitlements (
                    entitlement_id,
                    service_id,
                    persona_id,
                    buyer_wallet,
                    capability_class,
                    usage_count,
                    max_usage,
                    expires_at,
                    granted_from_attempt_id,
                    amount_paid_minor_unit,
                    granted_at
                )
                VALUES (%(entitlement_id)s, %(service_id)s, %(persona_id)s, %(buyer_wallet)s,
                        %(capability_class)s, %(usage_count)s, %(max_usage)s, %(expires_at)s,
                        %(granted_from_attempt_id)s, %(amount_paid_minor_unit)s, %(granted_at)s)
                ON CONFLICT (granted_from_attempt_id) DO UPDATE SET
                    usage_count = GREATEST(entitlements.usage_count, EXCLUDED.usage_count)
                RETURNING *
                """,
                {
                    "entitlement_id": entitlement.entitlement_id,
                    "service_id": entitlement.service_id,
                    "persona_id": entitlement.persona_id,
                    "buyer_wallet": entitlement.buyer_wallet,
                    "capability_class": entitlement.capability_class.value,
                    "usage_count": entitlement.usage_count,
                    "max_usage": entitlement.max_usage,
                    "expires_at": entitlement.expires_at,
                    "granted_from_attempt_id": entitlement.granted_from_attempt_id,
                    "amount_paid_minor_unit": entitlement.amount_paid_minor_unit,
                    "granted_at": entitlement.granted_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise StorageUnavailable("Database returned no row after saving entitlement")
            return _row_to_entitlement(row)

    def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlements
                WHERE entitlement_id = %s
                LIMIT 1
                """,
                (entitlement_id,),
            )
            row = cursor.fetchone()
            return _row_to_entitlement(row) if row else None

    def get_entitlement_by_attempt(self, attempt_id: str) -> Optional[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlements
                WHERE granted_from_attempt_id = %s
                LIMIT 1
                """,
                (attempt_id,),
            )
            row = cursor.fetchone()
            return _row_to_entitlement(row) if row else None

    def find_entitlements(self, service_id: str, buyer_wallet: str) -> Sequence[Entitlement]:
        return self.list_entitlements(service_id=service_id, buyer_wallet=buyer_wallet)

    def list_entitlements(
        self,
        *,
        buyer_wallet: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> Sequence[Entitlement]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if buyer_wallet is not None:
            clauses.append("buyer_wallet = %(buyer_wallet)s")
            params["buyer_wallet"] = buyer_wallet
        if service_id is not None:
            clauses.append("service_id = %(service_id)s")
            params["service_id"] = service_id
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM entitlements
                {where}
                ORDER BY granted_at DESC
                """,
                params,
            )
            return [_row_to_entitlement(row) for row in cursor.fetchall()]

    def increment_usage(self, entitlement_id: str, *, now: datetime) -> Optional[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE entitlements
                SET usage_count = usage_count + 1
                WHERE entitlement_id = %(entitlement_id)s
                  AND (max_usage IS NULL OR usage_count < max_usage)
                  AND (expires_at IS NULL OR expires_at > %(now)s)
                RETURNING *
                """,
                {"entitlement_id": entitlement_id, "now": now},
            )
            row = cursor.fetchone()
            return _row_to_entitlement(row) if row else None


__all__ = [
    "PostgresAttemptRepository",
    "PostgresCatalogRepository",
    "PostgresEntitlementRepository",
    "managed_connection",
]
