"""
Bot Package

Routes classified inbound events (menu actions, free text, uploaded
receipts) to the wallet workflows and builds the sold profile artifact.
"""

from typing import Optional

from wallet.admin import AdminAdjustFlow
from wallet.config import Settings
from wallet.downloads import DownloadGate
from wallet.service import WalletService
from wallet.storage import InMemoryStorage, KeyValueStore
from wallet.topup import TopupWorkflow

from .profiles import ProfileBuilder
from .router import (
    EventRouter,
    FileUpload,
    FreeText,
    MenuAction,
    Notifier,
    OutboxNotifier,
    parse_event,
)


def create_bot(
    settings: Settings,
    storage: Optional[KeyValueStore] = None,
    notifier: Optional[Notifier] = None,
) -> EventRouter:
    storage = storage or InMemoryStorage()
    wallet = WalletService(storage, history_cap=settings.history_cap)
    gate = DownloadGate(storage, settings, history=wallet.history, clock=wallet.clock)
    return EventRouter(
        wallet=wallet,
        topup=TopupWorkflow(wallet, settings),
        admin=AdminAdjustFlow(wallet, settings),
        profiles=ProfileBuilder(wallet, gate, settings),
        settings=settings,
        notifier=notifier or OutboxNotifier(),
    )


__all__ = [
    "EventRouter",
    "FileUpload",
    "FreeText",
    "MenuAction",
    "Notifier",
    "OutboxNotifier",
    "ProfileBuilder",
    "create_bot",
    "parse_event",
]
