"""Purchase settlement: lock, verify, pay, confirm, then grant."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence
from uuid import uuid4

from ..catalog.models import Service
from ..catalog.service import CatalogService
from ..entitlements.catalog import policy_for
from ..entitlements.models import Entitlement
from ..entitlements.service import EntitlementLedger
from ..errors import (
    AlreadyInProgress,
    AlreadyOwned,
    InsufficientBalance,
    PaymentFailed,
    PaymentPendingReconciliation,
    ServiceInactive,
    StorageUnavailable,
    UnresolvedPriorAttempt,
)
from ..wallet.ledger import WalletLedger
from ..wallet.models import ConfirmationResult, ConfirmationStatus
from ..wallet.pricing import build_payment_note
from .locks import InFlightRegistry
from .models import (
    AttemptReconciliation,
    PaymentAttempt,
    PaymentAttemptStatus,
    ReconciliationOutcome,
    ReconciliationReport,
    SettlementState,
)

logger = logging.getLogger("settlement")

# Extra time granted to the adapter on top of its own deadline before the
# orchestrator stops waiting.
CONFIRMATION_GRACE_SECONDS = 1.0


class PaymentAttemptRepository(Protocol):
    """Persistence operations required for payment attempts."""

    def save_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        ...

    def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        ...

    def record_submission(self, attempt_id: str, external_ref: str, *, now: datetime) -> Optional[PaymentAttempt]:
        """Store the ledger reference on a still-pending attempt."""

    def resolve_attempt(
        self,
        attempt_id: str,
        *,
        status: PaymentAttemptStatus,
        now: datetime,
        confirmed_round: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        """Move a pending attempt to ``status``; ``None`` if it already left pending."""

    def list_pending_attempts(
        self,
        *,
        service_id: Optional[str] = None,
        buyer_wallet: Optional[str] = None,
    ) -> Sequence[PaymentAttempt]:
        ...


class SettlementOrchestrator:
    """Drives a purchase from balance check through confirmed grant.

    Entitlements are only ever granted from a confirmed payment attempt.
    Anything ambiguous stays pending until :meth:`reconcile_pending`
    resolves it against the ledger network.
    """

    def __init__(
        self,
        catalog: CatalogService,
        ledger: EntitlementLedger,
        attempts: PaymentAttemptRepository,
        wallet: WalletLedger,
        *,
        registry: Optional[InFlightRegistry] = None,
        confirmation_timeout: float = 20.0,
        reconcile_confirmation_timeout: float = 2.0,
        stale_after: timedelta = timedelta(minutes=15),
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._attempts = attempts
        self._wallet = wallet
        self._registry = registry or InFlightRegistry()
        self._confirmation_timeout = confirmation_timeout
        self._reconcile_confirmation_timeout = reconcile_confirmation_timeout
        self._stale_after = stale_after

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    async def purchase(self, service_id: str, buyer_wallet: str) -> Entitlement:
        if not self._registry.try_acquire(service_id, buyer_wallet):
            raise AlreadyInProgress(
                "A purchase for this service is already in progress",
                detail={"service_id": service_id, "buyer_wallet": buyer_wallet},
            )
        try:
            return await self._settle(service_id, buyer_wallet)
        finally:
            self._registry.release(service_id, buyer_wallet)

    async def _settle(self, service_id: str, buyer_wallet: str) -> Entitlement:
        self._log_state(SettlementState.INITIATED, service_id, buyer_wallet)
        service = await asyncio.to_thread(self._check_preconditions, service_id, buyer_wallet)

        try:
            balance = await self._wallet.get_balance(buyer_wallet)
        except Exception as exc:
            logger.warning("Balance lookup failed for %s: %s", buyer_wallet, exc)
            raise PaymentFailed(
                "Unable to verify wallet balance",
                detail={"service_id": service_id, "buyer_wallet": buyer_wallet},
            ) from exc
        if balance < service.price_minor_unit:
            raise InsufficientBalance(
                "Wallet balance is below the service price",
                detail={"balance": balance, "price_minor_unit": service.price_minor_unit},
            )
        self._log_state(SettlementState.BALANCE_CHECKED, service_id, buyer_wallet)

        now = self._ledger.now()
        attempt = await asyncio.to_thread(
            self._attempts.save_attempt,
            PaymentAttempt(
                attempt_id=f"pay_{uuid4().hex}",
                service_id=service.service_id,
                buyer_wallet=buyer_wallet,
                seller_wallet=service.owner_wallet,
                amount_requested=service.price_minor_unit,
                capability_class=service.capability_class,
                owner_persona_id=service.owner_persona_id,
                created_at=now,
                updated_at=now,
            ),
        )

        note = build_payment_note(
            attempt_id=attempt.attempt_id,
            service_id=service.service_id,
            service_name=service.name,
            timestamp=now,
        )
        try:
            external_ref = await self._wallet.submit_payment(
                buyer_wallet, service.owner_wallet, service.price_minor_unit, note=note
            )
        except Exception as exc:
            await asyncio.to_thread(self._fail, attempt, f"submission failed: {exc}")
            raise PaymentFailed(
                "Payment could not be submitted",
                detail={"attempt_id": attempt.attempt_id},
            ) from exc

        try:
            attempt = await asyncio.to_thread(self._record_submission, attempt, external_ref)
        except StorageUnavailable as exc:
            logger.error(
                "Payment %s for attempt %s was submitted but its reference could not be stored",
                external_ref,
                attempt.attempt_id,
            )
            raise PaymentPendingReconciliation(
                "Payment submitted but could not be recorded",
                detail={"attempt_id": attempt.attempt_id, "external_ref": external_ref},
            ) from exc
        self._log_state(SettlementState.SUBMITTED, service_id, buyer_wallet, attempt_id=attempt.attempt_id)

        result = await self._await_confirmation(external_ref, self._confirmation_timeout)
        if result.status == ConfirmationStatus.CONFIRMED:
            return await asyncio.to_thread(self._confirm_and_grant, attempt, result)

        if result.status == ConfirmationStatus.FAILED:
            await asyncio.to_thread(self._fail, attempt, result.reason or "payment rejected by ledger")
            raise PaymentFailed(
                "Payment was rejected by the ledger",
                detail={"attempt_id": attempt.attempt_id, "reason": result.reason},
            )

        self._log_state(SettlementState.TIMED_OUT, service_id, buyer_wallet, attempt_id=attempt.attempt_id)
        logger.warning("Payment %s not confirmed in time; left pending", external_ref)
        raise PaymentPendingReconciliation(
            "Payment submitted but not yet confirmed",
            detail={"attempt_id": attempt.attempt_id, "external_ref": external_ref},
        )

    def _check_preconditions(self, service_id: str, buyer_wallet: str) -> Service:
        service = self._require_purchasable(service_id)
        self._ensure_not_owned(service, buyer_wallet)
        self._ensure_no_pending(service_id, buyer_wallet)
        return service

    def _require_purchasable(self, service_id: str) -> Service:
        service = self._catalog.find_service(service_id)
        if service is None or not service.is_purchasable:
            raise ServiceInactive("Service is not available for purchase", detail={"service_id": service_id})
        return service

    def _ensure_not_owned(self, service: Service, buyer_wallet: str) -> None:
        existing = self._ledger.get(service.service_id, buyer_wallet)
        if existing is None:
            return
        policy = policy_for(existing.capability_class)
        if not policy.repeatable or self._ledger.is_valid(existing):
            raise AlreadyOwned(
                "Buyer already holds access to this service",
                detail={"service_id": service.service_id, "entitlement_id": existing.entitlement_id},
            )

    def _ensure_no_pending(self, service_id: str, buyer_wallet: str) -> None:
        pending = self._attempts.list_pending_attempts(service_id=service_id, buyer_wallet=buyer_wallet)
        if pending:
            raise UnresolvedPriorAttempt(
                "A previous payment for this service is awaiting reconciliation",
                detail={"service_id": service_id, "attempt_id": pending[0].attempt_id},
            )

    async def _await_confirmation(self, external_ref: str, timeout: float) -> ConfirmationResult:
        try:
            return await asyncio.wait_for(
                self._wallet.await_confirmation(external_ref, timeout),
                timeout + CONFIRMATION_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            return ConfirmationResult.timed_out(external_ref)
        except Exception as exc:
            logger.warning("Confirmation lookup for %s failed: %s", external_ref, exc)
            return ConfirmationResult.timed_out(external_ref)

    def _record_submission(self, attempt: PaymentAttempt, external_ref: str) -> PaymentAttempt:
        now = self._ledger.now()
        submitted = attempt.model_copy(update={"external_ref": external_ref, "updated_at": now})
        try:
            recorded = self._attempts.record_submission(attempt.attempt_id, external_ref, now=now)
        except StorageUnavailable:
            logger.warning("Keeping reference %s for attempt %s outside durable storage", external_ref, attempt.attempt_id)
            return self._attempts.save_attempt(submitted)
        return recorded or submitted

    def _resolve(
        self,
        attempt: PaymentAttempt,
        status: PaymentAttemptStatus,
        *,
        confirmed_round: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentAttempt]:
        now = self._ledger.now()
        try:
            return self._attempts.resolve_attempt(
                attempt.attempt_id,
                status=status,
                now=now,
                confirmed_round=confirmed_round,
                failure_reason=failure_reason,
            )
        except StorageUnavailable:
            # The pair lock is held, so the pending copy in hand is current.
            if not attempt.is_unresolved:
                raise
            logger.warning("Resolving attempt %s outside durable storage", attempt.attempt_id)
            return self._attempts.save_attempt(
                attempt.model_copy(
                    update={
                        "status": status,
                        "confirmed_round": confirmed_round,
                        "failure_reason": failure_reason,
                        "updated_at": now,
                    }
                )
            )

    def _confirm_and_grant(self, attempt: PaymentAttempt, result: ConfirmationResult) -> Entitlement:
        confirmed = self._resolve(attempt, PaymentAttemptStatus.CONFIRMED, confirmed_round=result.confirmed_round)
        if confirmed is None:
            confirmed = self._attempts.get_attempt(attempt.attempt_id)
        if confirmed is None or confirmed.status != PaymentAttemptStatus.CONFIRMED:
            raise PaymentFailed(
                "Payment attempt was resolved elsewhere",
                detail={"attempt_id": attempt.attempt_id},
            )
        self._log_state(SettlementState.CONFIRMED, attempt.service_id, attempt.buyer_wallet, attempt_id=attempt.attempt_id)

        entitlement = self._ledger.grant_from_attempt(confirmed)
        self._log_state(SettlementState.GRANTED, attempt.service_id, attempt.buyer_wallet, attempt_id=attempt.attempt_id)
        return entitlement

    def _fail(self, attempt: PaymentAttempt, reason: str) -> None:
        self._resolve(attempt, PaymentAttemptStatus.FAILED, failure_reason=reason)
        logger.warning("Payment attempt %s failed: %s", attempt.attempt_id, reason)

    async def reconcile_pending(self) -> ReconciliationReport:
        """Resolve every pending attempt against the ledger network."""

        started_at = self._ledger.now()
        results: List[AttemptReconciliation] = []
        for attempt in await asyncio.to_thread(self._attempts.list_pending_attempts):
            results.append(await self.reconcile_attempt(attempt))
        report = ReconciliationReport(started_at=started_at, results=results)
        if results:
            logger.info(
                "Reconciliation pass checked %s attempts: granted=%s failed=%s pending=%s review=%s skipped=%s",
                len(results),
                report.count(ReconciliationOutcome.GRANTED),
                report.count(ReconciliationOutcome.FAILED),
                report.count(ReconciliationOutcome.STILL_PENDING),
                report.count(ReconciliationOutcome.NEEDS_REVIEW),
                report.count(ReconciliationOutcome.SKIPPED_IN_FLIGHT),
            )
        return report

    async def reconcile_attempt(self, attempt: PaymentAttempt) -> AttemptReconciliation:
        if not self._registry.try_acquire(attempt.service_id, attempt.buyer_wallet):
            return AttemptReconciliation(attempt_id=attempt.attempt_id, outcome=ReconciliationOutcome.SKIPPED_IN_FLIGHT)
        try:
            return await self._reconcile(attempt)
        finally:
            self._registry.release(attempt.service_id, attempt.buyer_wallet)

    async def _reconcile(self, attempt: PaymentAttempt) -> AttemptReconciliation:
        current = await asyncio.to_thread(self._attempts.get_attempt, attempt.attempt_id) or attempt
        if current.status == PaymentAttemptStatus.FAILED:
            return AttemptReconciliation(attempt_id=current.attempt_id, outcome=ReconciliationOutcome.FAILED)
        if current.status == PaymentAttemptStatus.CONFIRMED:
            entitlement = await asyncio.to_thread(self._ledger.grant_from_attempt, current)
            return AttemptReconciliation(
                attempt_id=current.attempt_id,
                outcome=ReconciliationOutcome.GRANTED,
                entitlement_id=entitlement.entitlement_id,
            )

        if not current.external_ref:
            # Without a reference the ledger may still hold the payment, so an
            # operator has to look it up by the attempt id in the payment note.
            if self._ledger.now() - current.created_at >= self._stale_after:
                reason = "no ledger reference recorded; check the ledger for this attempt id"
                logger.error("Payment attempt %s needs manual review: %s", current.attempt_id, reason)
                return AttemptReconciliation(
                    attempt_id=current.attempt_id, outcome=ReconciliationOutcome.NEEDS_REVIEW, reason=reason
                )
            return AttemptReconciliation(attempt_id=current.attempt_id, outcome=ReconciliationOutcome.STILL_PENDING)

        result = await self._await_confirmation(current.external_ref, self._reconcile_confirmation_timeout)
        if result.status == ConfirmationStatus.CONFIRMED:
            entitlement = await asyncio.to_thread(self._confirm_and_grant, current, result)
            logger.info("Reconciled attempt %s into entitlement %s", current.attempt_id, entitlement.entitlement_id)
            return AttemptReconciliation(
                attempt_id=current.attempt_id,
                outcome=ReconciliationOutcome.GRANTED,
                entitlement_id=entitlement.entitlement_id,
            )
        if result.status == ConfirmationStatus.FAILED:
            await asyncio.to_thread(self._fail, current, result.reason or "payment rejected by ledger")
            return AttemptReconciliation(
                attempt_id=current.attempt_id, outcome=ReconciliationOutcome.FAILED, reason=result.reason
            )
        return AttemptReconciliation(attempt_id=current.attempt_id, outcome=ReconciliationOutcome.STILL_PENDING)

    @staticmethod
    def _log_state(
        state: SettlementState,
        service_id: str,
        buyer_wallet: str,
        *,
        attempt_id: Optional[str] = None,
    ) -> None:
        logger.debug(
            "Settlement %s service=%s buyer=%s",
            state.value,
            service_id,
            buyer_wallet,
            extra={"settlement_state": state.value, "attempt_id": attempt_id},
        )


__all__ = ["PaymentAttemptRepository", "SettlementOrchestrator"]
