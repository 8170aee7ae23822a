import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from .history import HistoryLog
from .models import (
    Account,
    AccountFlowState,
    BalanceChange,
    FlowResult,
    HistoryTopic,
    LedgerEntry,
    Screen,
    ScreenName,
)
from .storage import InMemoryStorage, KeyValueStore, utcnow


logger = logging.getLogger(__name__)


class WalletServiceError(Exception):
    code = "error"


class UnauthorizedError(WalletServiceError):
    code = "unauthorized"


class InvalidInputError(WalletServiceError):
    code = "invalid_input"


class NotAwaitingReceiptError(WalletServiceError):
    code = "not_awaiting_receipt"


class AlreadyResolvedError(WalletServiceError):
    code = "already_resolved"


class InsufficientFundsError(WalletServiceError):
    code = "insufficient_funds"

    def __init__(self, account_id: int, balance: int, required: int):
        super().__init__(f"Account {account_id} has {balance}, needs {required}")
        self.account_id = account_id
        self.balance = balance
        self.required = required


class RecordNotFoundError(WalletServiceError):
    code = "not_found"


class RecordExpiredError(RecordNotFoundError):
    code = "expired"


class DownloadLimitReachedError(WalletServiceError):
    code = "limit_reached"


class WalletService:
    """Account records and the balance ledger over an injected store.

    Every account write is a compare-and-set on a fresh read, see
    ``update_account``. Only ``adjust_balance`` touches ``balance``.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStore] = None,
        history_cap: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage or InMemoryStorage()
        self.history = HistoryLog(self.storage, cap=history_cap)
        self.clock = clock

    @staticmethod
    def account_key(account_id: int) -> str:
        return f"account:{account_id}"

    async def get_account(self, account_id: int) -> Optional[Account]:
        raw = await self.storage.get(self.account_key(account_id))
        return Account.model_validate_json(raw) if raw else None

    async def ensure_account(self, account_id: int) -> Account:
        account = await self.get_account(account_id)
        if account is not None:
            return account
        account = Account(account_id=account_id, first_seen_at=self.clock())
        if await self.storage.compare_and_set(self.account_key(account_id), None, account.model_dump_json()):
            logger.info("Created account %s", account_id)
            return account
        return await self.get_account(account_id) or account

    async def update_account(self, account_id: int, mutate: Callable[[Account], None]) -> Account:
        """Apply ``mutate`` to a freshly read account and write it back with compare-and-set.

        ``mutate`` may run more than once when writers race, and may raise to
        abort the write.
        """
        updated: list[Account] = []

        def _apply(raw: Optional[str]) -> str:
            if raw:
                account = Account.model_validate_json(raw)
            else:
                account = Account(account_id=account_id, first_seen_at=self.clock())
            mutate(account)
            updated[:] = [account]
            return account.model_dump_json()

        await self.storage.update(self.account_key(account_id), _apply)
        return updated[0]

    async def set_flow(self, account_id: int, flow: AccountFlowState) -> Account:
        def _set(account: Account) -> None:
            account.flow = flow

        return await self.update_account(account_id, _set)

    async def get_balance(self, account_id: int) -> int:
        account = await self.get_account(account_id)
        return account.balance if account else 0

    async def require_funds(self, account_id: int, required: int) -> int:
        balance = await self.get_balance(account_id)
        if balance < required:
            raise InsufficientFundsError(account_id, balance, required)
        return balance

    async def adjust_balance(
        self,
        account_id: int,
        delta: int,
        reason: Union[str, Enum],
        meta: Optional[dict[str, Any]] = None,
        required: Optional[int] = None,
    ) -> BalanceChange:
        """Apply ``delta`` clamped at zero and append one ledger entry.

        With ``required`` set, the balance is re-checked inside the
        compare-and-set and ``InsufficientFundsError`` aborts the write, so
        racing spends cannot both pass a pre-check.
        """
        changes: list[BalanceChange] = []

        def _adjust(account: Account) -> None:
            if required is not None and account.balance < required:
                raise InsufficientFundsError(account_id, account.balance, required)
            before = account.balance
            account.balance = max(0, before + delta)
            changes[:] = [BalanceChange(account_id=account_id, before=before, after=account.balance)]

        await self.update_account(account_id, _adjust)
        change = changes[0]

        tag = reason.value if isinstance(reason, Enum) else reason
        entry = LedgerEntry(
            at=self.clock(), delta=delta, before=change.before, after=change.after, reason=tag, meta=meta or {}
        )
        await self.history.append(HistoryTopic.BALANCE, account_id, entry)
        if change.before + delta < 0:
            logger.info("Clamped overdraft on account %s: %s%+d -> 0", account_id, change.before, delta)
        return change

    async def balance_history(self, account_id: int) -> list[LedgerEntry]:
        return await self.history.read(HistoryTopic.BALANCE, account_id, LedgerEntry)

    async def record_action(self, account_id: int, action_tag: str) -> Account:
        now = self.clock()

        def _record_action(account: Account) -> None:
            account.last_action = action_tag
            account.last_action_at = now

        return await self.update_account(account_id, _record_action)

    async def account_status(self, account_id: int) -> FlowResult:
        account = await self.ensure_account(account_id)
        return FlowResult(screen=Screen(
            name=ScreenName.STATUS,
            params={
                "account_id": account.account_id,
                "balance": account.balance,
                "first_seen_at": account.first_seen_at.isoformat(),
                "profile_counters": dict(account.profile_counters),
            },
        ))
