"""Pooled vault: verified deposits, share accounting and withdrawals."""

from celofx.vault.accountant import LedgerAccountant, VaultMetrics, compute_share_price
from celofx.vault.service import VaultService
from celofx.vault.verifier import DepositVerifier, VerifiedTransfer

__all__ = [
    "DepositVerifier",
    "LedgerAccountant",
    "VaultMetrics",
    "VaultService",
    "VerifiedTransfer",
    "compute_share_price",
]
