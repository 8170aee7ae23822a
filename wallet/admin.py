import logging
from typing import Union

from .config import Settings
from .models import (
    Account,
    AdjustMode,
    AdjustStep,
    AdminAdjustState,
    FlowResult,
    IdleFlow,
    LedgerReason,
    Notification,
    Screen,
    ScreenName,
)
from .numerals import format_amount, parse_localized_int
from .service import InvalidInputError, UnauthorizedError, WalletService


logger = logging.getLogger(__name__)


class AdminAdjustFlow:
    """Two-step guided balance adjustment, available to the admin only."""

    def __init__(self, wallet: WalletService, settings: Settings):
        self.wallet = wallet
        self.settings = settings

    def _check_admin(self, admin_id: int) -> None:
        if not self.settings.is_admin(admin_id):
            logger.warning("Account %s tried to use the balance adjustment flow", admin_id)
            raise UnauthorizedError("Only the admin can adjust balances")

    async def _current_state(self, admin_id: int, step: AdjustStep) -> AdminAdjustState:
        account = await self.wallet.ensure_account(admin_id)
        flow = account.flow
        if not isinstance(flow, AdminAdjustState) or flow.step != step:
            raise InvalidInputError("No balance adjustment is waiting for this input")
        return flow

    async def start_adjust(self, admin_id: int, mode: Union[AdjustMode, str]) -> FlowResult:
        self._check_admin(admin_id)
        try:
            mode = AdjustMode(mode)
        except ValueError:
            raise InvalidInputError(f"Unknown adjustment mode {mode!r}")
        await self.wallet.set_flow(admin_id, AdminAdjustState(step=AdjustStep.TARGET, mode=mode))
        return FlowResult(screen=Screen(name=ScreenName.ADMIN_ASK_TARGET, params={"mode": mode.value}))

    async def provide_target_id(self, admin_id: int, raw_text: str) -> FlowResult:
        self._check_admin(admin_id)
        flow = await self._current_state(admin_id, AdjustStep.TARGET)
        target = parse_localized_int(raw_text)
        if target is None or target <= 0:
            raise InvalidInputError(f"Not a valid account id: {raw_text!r}")

        await self.wallet.set_flow(admin_id, AdminAdjustState(
            step=AdjustStep.AMOUNT, mode=flow.mode, target_account_id=target,
        ))
        balance = await self.wallet.get_balance(target)
        return FlowResult(screen=Screen(
            name=ScreenName.ADMIN_ASK_AMOUNT,
            params={"mode": flow.mode.value, "target_account_id": target, "balance": balance},
        ))

    async def provide_amount(self, admin_id: int, raw_text: str) -> FlowResult:
        self._check_admin(admin_id)
        flow = await self._current_state(admin_id, AdjustStep.AMOUNT)
        amount = parse_localized_int(raw_text)
        if not amount:
            raise InvalidInputError(f"Not a valid amount: {raw_text!r}")

        target = flow.target_account_id
        delta = amount if flow.mode == AdjustMode.INCREASE else -amount
        change = await self.wallet.adjust_balance(
            target, delta, LedgerReason.ADMIN_ADJUST, meta={"admin_id": admin_id, "mode": flow.mode.value},
        )
        await self.wallet.set_flow(admin_id, IdleFlow())
        logger.info("Admin %s adjusted %s by %+d (%s -> %s)", admin_id, target, delta, change.before, change.after)

        verb = "increased" if flow.mode == AdjustMode.INCREASE else "decreased"
        return FlowResult(
            screen=Screen(
                name=ScreenName.ADMIN_ADJUSTED,
                params={
                    "target_account_id": target,
                    "delta": delta,
                    "before": change.before,
                    "after": change.after,
                },
            ),
            notifications=[
                Notification(
                    account_id=admin_id,
                    message=(
                        f"Balance of {target} {verb}: "
                        f"{format_amount(change.before)} -> {format_amount(change.after)}"
                    ),
                ),
                Notification(
                    account_id=target,
                    message=f"Your balance was {verb} by the admin. Balance: {format_amount(change.after)}",
                ),
            ],
        )

    async def cancel(self, admin_id: int) -> FlowResult:
        def _cancel(account: Account) -> None:
            if isinstance(account.flow, AdminAdjustState):
                account.flow = IdleFlow()

        await self.wallet.update_account(admin_id, _cancel)
        return FlowResult(screen=Screen(name=ScreenName.ADMIN_CANCELLED))
