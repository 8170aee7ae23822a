import logging
import re
import uuid
from typing import Callable

from wallet.config import Settings
from wallet.downloads import DownloadGate
from wallet.models import (
    DEFAULT_FALLBACK_CIDR,
    Account,
    AwaitingUuidFlow,
    FlowResult,
    IdleFlow,
    LedgerReason,
    Notification,
    Screen,
    ScreenName,
)
from wallet.numerals import format_amount
from wallet.service import InvalidInputError, WalletService

from .artifact import build_mobileconfig


logger = logging.getLogger(__name__)

UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)

APN_OPTIONS = {
    "mcinet": "MCI",
    "mtnirancell": "Irancell",
    "RighTel": "RighTel",
    "ApTel": "ApTel",
    "samantel": "samantel",
    "shatelmobile": "SHATEL",
}

DEFAULT_GOD_CIDRS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "2.176.0.0/15",
    "2.190.0.0/15",
    "151.232.128.0/17",
    "5.208.0.0/16",
    "164.215.128.0/17",
    "46.143.0.0/17",
    "79.127.0.0/17",
    "46.209.128.0/18",
    "46.209.224.0/19",
    "46.209.64.0/19",
)


class ProfileBuilder:
    """Edits the account's profile draft and sells the built artifact.

    ``build`` checks funds before spending, so an account that cannot pay is
    never charged and gets no link.
    """

    def __init__(
        self,
        wallet: WalletService,
        gate: DownloadGate,
        settings: Settings,
        render: Callable[..., str] = build_mobileconfig,
    ):
        self.wallet = wallet
        self.gate = gate
        self.settings = settings
        self.render = render

    async def show_menu(self, account_id: int) -> FlowResult:
        account = await self.wallet.ensure_account(account_id)
        return FlowResult(screen=Screen(
            name=ScreenName.PROFILE_MENU,
            params={
                "profile": account.profile.model_dump(),
                "cost": self.settings.profile_cost,
                "balance": account.balance,
            },
        ))

    async def show_apn_choices(self, account_id: int) -> FlowResult:
        return FlowResult(screen=Screen(name=ScreenName.PROFILE_APN_CHOICES, params={"options": dict(APN_OPTIONS)}))

    async def show_cidr_choices(self, account_id: int) -> FlowResult:
        return FlowResult(screen=Screen(
            name=ScreenName.PROFILE_CIDR_CHOICES, params={"options": list(DEFAULT_GOD_CIDRS)},
        ))

    async def select_apn(self, account_id: int, apn: str) -> FlowResult:
        if apn not in APN_OPTIONS:
            raise InvalidInputError(f"Unknown operator {apn!r}")

        def _select(account: Account) -> None:
            account.profile.apn = apn

        await self.wallet.update_account(account_id, _select)
        return await self.show_menu(account_id)

    async def generate_uuid(self, account_id: int) -> FlowResult:
        root_uuid = str(uuid.uuid4())

        def _generate(account: Account) -> None:
            account.profile.root_uuid = root_uuid
            if isinstance(account.flow, AwaitingUuidFlow):
                account.flow = IdleFlow()

        await self.wallet.update_account(account_id, _generate)
        return await self.show_menu(account_id)

    async def ask_uuid(self, account_id: int) -> FlowResult:
        await self.wallet.set_flow(account_id, AwaitingUuidFlow())
        return FlowResult(screen=Screen(name=ScreenName.PROFILE_ASK_UUID))

    async def provide_uuid(self, account_id: int, text: str) -> FlowResult:
        value = (text or "").strip()
        if not UUID_V4_PATTERN.match(value):
            raise InvalidInputError("Send a valid version 4 UUID")

        def _provide(account: Account) -> None:
            account.profile.root_uuid = value
            account.flow = IdleFlow()

        await self.wallet.update_account(account_id, _provide)
        return await self.show_menu(account_id)

    async def leave_uuid_entry(self, account_id: int) -> FlowResult:
        def _leave(account: Account) -> None:
            if isinstance(account.flow, AwaitingUuidFlow):
                account.flow = IdleFlow()

        await self.wallet.update_account(account_id, _leave)
        return await self.show_menu(account_id)

    async def toggle_god_mode(self, account_id: int) -> FlowResult:
        def _toggle(account: Account) -> None:
            account.profile.god_mode = not account.profile.god_mode

        await self.wallet.update_account(account_id, _toggle)
        return await self.show_menu(account_id)

    async def select_cidr(self, account_id: int, cidr: str) -> FlowResult:
        if cidr not in DEFAULT_GOD_CIDRS:
            raise InvalidInputError(f"Unknown CIDR {cidr!r}")

        def _select(account: Account) -> None:
            account.profile.selected_cidr = cidr

        await self.wallet.update_account(account_id, _select)
        return await self.show_menu(account_id)

    async def build(self, account_id: int) -> FlowResult:
        account = await self.wallet.ensure_account(account_id)
        draft = account.profile
        if not draft.apn:
            raise InvalidInputError("Choose an operator first")
        if not draft.root_uuid or not UUID_V4_PATTERN.match(draft.root_uuid):
            raise InvalidInputError("No valid UUID is set")

        cost = self.settings.profile_cost
        await self.wallet.require_funds(account_id, cost)
        payload = self.render(
            root_uuid=draft.root_uuid,
            apn=draft.apn,
            selected_cidr=draft.selected_cidr if draft.god_mode else DEFAULT_FALLBACK_CIDR,
        )

        balance = account.balance
        if cost:
            change = await self.wallet.adjust_balance(
                account_id, -cost, LedgerReason.PROFILE_BUILD, meta={"apn": draft.apn}, required=cost,
            )
            balance = change.after

        def _count(current: Account) -> None:
            current.profile_counters[draft.apn] = current.profile_counters.get(draft.apn, 0) + 1

        await self.wallet.update_account(account_id, _count)

        link = await self.gate.issue(account_id, payload)
        url = self.gate.link_url(link.id)
        logger.info("Built profile for %s (%s), download %s", account_id, draft.apn, link.id)

        return FlowResult(
            screen=Screen(
                name=ScreenName.ARTIFACT_READY,
                params={"url": url, "balance": balance, "expires_at": link.expires_at.isoformat()},
            ),
            notifications=[Notification(
                account_id=account_id,
                message=(
                    f"Your profile is ready: {url}\n"
                    f"PIN: {link.pin}\n"
                    f"Downloads: {link.max_downloads}, valid until {link.expires_at:%Y-%m-%d %H:%M} UTC\n"
                    f"Charged {format_amount(cost)}, balance {format_amount(balance)}"
                ),
            )],
        )
