"""Adapter contract for the external wallet ledger and an algod implementation."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from fastapi import status

from ..errors import EngineError
from .models import ConfirmationResult

logger = logging.getLogger("wallet")


class WalletLedgerError(EngineError):
    """The ledger network rejected or failed to answer a request."""

    code = "wallet_ledger_error"
    status_code = status.HTTP_502_BAD_GATEWAY


class WalletLedger(Protocol):
    """Three-call boundary the settlement engine depends on.

    ``submit_payment`` is fire-at-most-once per payment attempt; callers never
    retry it for the same attempt.
    """

    async def get_balance(self, wallet: str) -> int:
        ...

    async def submit_payment(self, sender: str, receiver: str, amount: int, *, note: bytes = b"") -> str:
        ...

    async def await_confirmation(self, external_ref: str, timeout: float) -> ConfirmationResult:
        ...


class PaymentSigner(Protocol):
    """Produces signed transaction bytes on behalf of the paying wallet."""

    async def sign_payment(self, *, sender: str, receiver: str, amount: int, note: bytes) -> bytes:
        ...


class AlgodWalletLedger:
    """Talks to an Algorand ``algod`` node over its v2 REST API.

    Amounts are microAlgos. Signing stays with the buyer's wallet through
    :class:`PaymentSigner`; this adapter only relays signed bytes.
    """

    def __init__(
        self,
        *,
        base_url: str,
        signer: PaymentSigner,
        api_token: str = "",
        request_timeout: float = 10.0,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._signer = signer
        self._api_token = api_token
        self._request_timeout = request_timeout
        self._poll_interval = max(0.01, poll_interval)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers: Dict[str, str] = {}
        if self._api_token:
            headers["X-Algo-API-Token"] = self._api_token
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._request_timeout,
            transport=self._transport,
        )

    async def get_balance(self, wallet: str) -> int:
        try:
            async with self._client() as client:
                response = await client.get(f"/v2/accounts/{wallet}", params={"exclude": "all"})
                response.raise_for_status()
                body: Dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            raise WalletLedgerError(
                "Unable to read wallet balance", detail={"wallet": wallet, "cause": str(exc)}
            ) from exc

        amount = body.get("amount")
        if not isinstance(amount, int):
            raise WalletLedgerError("Ledger returned no balance", detail={"wallet": wallet})
        return amount

    async def submit_payment(self, sender: str, receiver: str, amount: int, *, note: bytes = b"") -> str:
        signed = await self._signer.sign_payment(sender=sender, receiver=receiver, amount=amount, note=note)
        if not signed:
            raise WalletLedgerError("Transaction was not signed by the wallet", detail={"wallet": sender})

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v2/transactions",
                    content=signed,
                    headers={"Content-Type": "application/x-binary"},
                )
                response.raise_for_status()
                body: Dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            raise WalletLedgerError("Payment submission failed", detail={"cause": str(exc)}) from exc

        txid = body.get("txId")
        if not txid:
            raise WalletLedgerError("Ledger did not return a transaction id")
        logger.info("Payment submitted txid=%s sender=%s receiver=%s amount=%s", txid, sender, receiver, amount)
        return str(txid)

    async def await_confirmation(self, external_ref: str, timeout: float) -> ConfirmationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        async with self._client() as client:
            while True:
                try:
                    response = await client.get(f"/v2/transactions/pending/{external_ref}")
                    if response.status_code != httpx.codes.NOT_FOUND:
                        response.raise_for_status()
                        info: Dict[str, Any] = response.json()
                        confirmed_round = int(info.get("confirmed-round") or 0)
                        if confirmed_round > 0:
                            return ConfirmationResult.confirmed(external_ref, confirmed_round)
                        pool_error = info.get("pool-error")
                        if pool_error:
                            return ConfirmationResult.failed(external_ref, str(pool_error))
                except httpx.HTTPError as exc:
                    logger.warning("Polling transaction %s failed: %s", external_ref, exc)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    return ConfirmationResult.timed_out(external_ref)
                await asyncio.sleep(min(self._poll_interval, remaining))


__all__ = ["AlgodWalletLedger", "PaymentSigner", "WalletLedger", "WalletLedgerError"]
