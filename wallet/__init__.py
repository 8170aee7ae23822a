"""
Prepaid Wallet Core

This package provides:
- Per-account balance with a clamp-at-zero ledger
- Manual bank-transfer top-ups: receipt → admin review → approve / reject
- Admin balance adjustment flow
- PIN and session gated, expiring, usage-capped download links
- Pluggable async key/value state store
"""

from .admin import AdminAdjustFlow
from .config import Settings
from .downloads import DownloadGate
from .models import (
    Account,
    AdjustMode,
    DownloadAccessRecord,
    FlowResult,
    LedgerEntry,
    Notification,
    Screen,
    ScreenName,
    TopupDecision,
    TopupRequest,
)
from .service import WalletService, WalletServiceError
from .storage import InMemoryStorage, KeyValueStore
from .topup import TopupWorkflow

__all__ = [
    "Account",
    "AdjustMode",
    "AdminAdjustFlow",
    "DownloadAccessRecord",
    "DownloadGate",
    "FlowResult",
    "InMemoryStorage",
    "KeyValueStore",
    "LedgerEntry",
    "Notification",
    "Screen",
    "ScreenName",
    "Settings",
    "TopupDecision",
    "TopupRequest",
    "TopupWorkflow",
    "WalletService",
    "WalletServiceError",
]
