"""Wallet ledger adapter and price helpers."""

from .ledger import AlgodWalletLedger, PaymentSigner, WalletLedger, WalletLedgerError
from .models import ConfirmationResult, ConfirmationStatus
from .pricing import build_payment_note, estimate_fiat, to_minor_units, to_whole_units

__all__ = [
    "AlgodWalletLedger",
    "ConfirmationResult",
    "ConfirmationStatus",
    "PaymentSigner",
    "WalletLedger",
    "WalletLedgerError",
    "build_payment_note",
    "estimate_fiat",
    "to_minor_units",
    "to_whole_units",
]
