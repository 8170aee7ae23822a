import json
import logging
from typing import Optional, Union
from uuid import uuid4

from .config import Settings
from .models import (
    Account,
    AwaitingReceiptFlow,
    FlowResult,
    HistoryTopic,
    IdleFlow,
    LedgerReason,
    Notification,
    Screen,
    ScreenName,
    TopupDecision,
    TopupHistoryEntry,
    TopupOutcome,
    TopupRequest,
)
from .numerals import format_amount
from .service import (
    AlreadyResolvedError,
    InvalidInputError,
    NotAwaitingReceiptError,
    UnauthorizedError,
    WalletService,
)


logger = logging.getLogger(__name__)

PENDING_INDEX_KEY = "topup:pending"


class TopupWorkflow:
    """Manual bank-transfer top-ups reviewed by the admin.

    Idle -> AmountChosen -> AwaitingReceipt -> PendingReview -> Approved | Rejected

    A pending request is a stored ``TopupRequest`` whose id is listed in the
    pending index. Resolution consumes the record: the conditional delete is
    the commit point, so a replayed or concurrent decision on the same id
    fails with ``AlreadyResolvedError`` and never credits twice.
    """

    def __init__(self, wallet: WalletService, settings: Settings):
        self.wallet = wallet
        self.storage = wallet.storage
        self.settings = settings
        self.clock = wallet.clock

    @staticmethod
    def request_key(request_id: str) -> str:
        return f"topup:request:{request_id}"

    async def show_amounts(self, account_id: int) -> FlowResult:
        balance = await self.wallet.get_balance(account_id)
        return FlowResult(screen=Screen(
            name=ScreenName.TOPUP_AMOUNTS,
            params={"balance": balance, "amounts": list(self.settings.topup_amounts)},
        ))

    async def choose_amount(self, account_id: int, amount: int) -> FlowResult:
        if amount <= 0:
            raise InvalidInputError(f"Top-up amount must be positive, got {amount}")

        def _choose(account: Account) -> None:
            account.selected_amount = amount

        await self.wallet.update_account(account_id, _choose)
        return FlowResult(screen=Screen(
            name=ScreenName.TOPUP_PAYMENT_DETAILS,
            params={
                "amount": amount,
                "card_number": self.settings.card_number,
                "card_holder": self.settings.card_holder,
            },
        ))

    async def begin_awaiting_receipt(self, account_id: int, amount: int) -> FlowResult:
        if amount <= 0:
            raise InvalidInputError(f"Top-up amount must be positive, got {amount}")

        def _await(account: Account) -> None:
            account.flow = AwaitingReceiptFlow(expected_amount=amount)
            account.selected_amount = None

        await self.wallet.update_account(account_id, _await)
        return FlowResult(screen=Screen(name=ScreenName.AWAITING_RECEIPT, params={"amount": amount}))

    async def cancel_receipt(self, account_id: int) -> FlowResult:
        def _cancel(account: Account) -> None:
            if isinstance(account.flow, AwaitingReceiptFlow):
                account.flow = IdleFlow()

        await self.wallet.update_account(account_id, _cancel)
        return await self.show_amounts(account_id)

    async def submit_receipt(self, account_id: int, chat_id: int, evidence_ref: str) -> FlowResult:
        expected: list[int] = []

        def _claim(account: Account) -> None:
            if not isinstance(account.flow, AwaitingReceiptFlow):
                raise NotAwaitingReceiptError(f"Account {account_id} is not expecting a receipt")
            expected[:] = [account.flow.expected_amount]
            account.flow = IdleFlow()

        await self.wallet.update_account(account_id, _claim)

        request = TopupRequest(
            id=uuid4().hex,
            account_id=account_id,
            chat_id=chat_id,
            amount=expected[0],
            evidence_ref=evidence_ref,
            created_at=self.clock(),
        )
        await self.storage.put(self.request_key(request.id), request.model_dump_json())
        await self.storage.update(PENDING_INDEX_KEY, lambda raw: json.dumps(_ids(raw) + [request.id]))

        await self.wallet.history.append(HistoryTopic.TOPUP, account_id, TopupHistoryEntry(
            at=request.created_at,
            request_id=request.id,
            amount=request.amount,
            outcome=TopupOutcome.SUBMITTED,
        ))
        logger.info("Top-up %s submitted by %s for %s", request.id, account_id, request.amount)

        admin_notice = Notification(
            account_id=self.settings.admin_id,
            message=(
                f"New top-up request {request.id}\n"
                f"Account: {account_id}\nAmount: {format_amount(request.amount)}"
            ),
            attachments=[evidence_ref],
            actions=[f"topup:approve:{request.id}", f"topup:reject:{request.id}"],
        )
        return FlowResult(
            screen=Screen(
                name=ScreenName.RECEIPT_SUBMITTED,
                params={"request_id": request.id, "amount": request.amount},
            ),
            notifications=[admin_notice],
        )

    async def get_request(self, request_id: str) -> Optional[TopupRequest]:
        raw = await self.storage.get(self.request_key(request_id))
        return TopupRequest.model_validate_json(raw) if raw else None

    async def pending_ids(self) -> list[str]:
        return _ids(await self.storage.get(PENDING_INDEX_KEY))

    async def resolve(
        self,
        request_id: str,
        decision: Union[TopupDecision, str],
        acting_admin_id: int,
    ) -> FlowResult:
        if not self.settings.is_admin(acting_admin_id):
            logger.warning("Account %s tried to resolve top-up %s", acting_admin_id, request_id)
            raise UnauthorizedError("Only the admin can resolve top-ups")
        try:
            decision = TopupDecision(decision)
        except ValueError:
            raise InvalidInputError(f"Unknown decision {decision!r}")

        request = await self.get_request(request_id)
        if request is None:
            raise AlreadyResolvedError(f"Top-up {request_id} was already resolved")
        if not await self.storage.delete(self.request_key(request_id)):
            logger.warning("Top-up %s was resolved concurrently", request_id)
            raise AlreadyResolvedError(f"Top-up {request_id} was already resolved")
        await self.storage.update(
            PENDING_INDEX_KEY,
            lambda raw: json.dumps([i for i in _ids(raw) if i != request_id]),
        )

        if decision == TopupDecision.APPROVE:
            change = await self.wallet.adjust_balance(
                request.account_id,
                request.amount,
                LedgerReason.TOPUP_APPROVED,
                meta={"request_id": request_id, "admin_id": acting_admin_id},
            )
            balance = change.after
            outcome = TopupOutcome.APPROVED
            message = (
                f"Your top-up of {format_amount(request.amount)} was approved. "
                f"Balance: {format_amount(balance)}"
            )
        else:
            balance = await self.wallet.get_balance(request.account_id)
            outcome = TopupOutcome.REJECTED
            message = f"Your top-up of {format_amount(request.amount)} was rejected."

        await self.wallet.history.append(HistoryTopic.TOPUP, request.account_id, TopupHistoryEntry(
            at=self.clock(),
            request_id=request_id,
            amount=request.amount,
            outcome=outcome,
            admin_id=acting_admin_id,
        ))
        logger.info("Top-up %s %s by admin %s", request_id, outcome.value, acting_admin_id)

        return FlowResult(
            screen=Screen(
                name=ScreenName.TOPUP_RESOLVED,
                params={
                    "request_id": request_id,
                    "decision": decision.value,
                    "account_id": request.account_id,
                    "amount": request.amount,
                    "balance": balance,
                },
            ),
            notifications=[
                Notification(account_id=request.account_id, message=message),
                Notification(
                    account_id=acting_admin_id,
                    message=f"Top-up {request_id} for {request.account_id} {outcome.value}: {format_amount(request.amount)}",
                ),
            ],
        )

    async def list_pending(self, acting_admin_id: int) -> FlowResult:
        if not self.settings.is_admin(acting_admin_id):
            raise UnauthorizedError("Only the admin can review top-ups")
        pending = []
        for request_id in await self.pending_ids():
            request = await self.get_request(request_id)
            if request is not None:
                pending.append(request.model_dump(mode="json"))
        return FlowResult(screen=Screen(name=ScreenName.TOPUP_PENDING_LIST, params={"requests": pending}))

    async def topup_history(self, account_id: int) -> list[TopupHistoryEntry]:
        return await self.wallet.history.read(HistoryTopic.TOPUP, account_id, TopupHistoryEntry)


def _ids(raw: Optional[str]) -> list[str]:
    return json.loads(raw) if raw else []
