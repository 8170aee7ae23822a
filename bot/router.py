import logging
from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from wallet.admin import AdminAdjustFlow
from wallet.config import Settings
from wallet.models import (
    Account,
    AdjustStep,
    AdminAdjustState,
    AwaitingUuidFlow,
    FlowResult,
    Notification,
    Screen,
    ScreenName,
    TopupDecision,
)
from wallet.numerals import parse_localized_int
from wallet.service import (
    InsufficientFundsError,
    InvalidInputError,
    UnauthorizedError,
    WalletService,
    WalletServiceError,
)
from wallet.storage import StoreError
from wallet.topup import TopupWorkflow

from .profiles import ProfileBuilder


logger = logging.getLogger(__name__)


class MenuAction(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: Literal["menuAction"] = "menuAction"
    action_tag: str
    account_id: int
    session_context: dict[str, Any] = Field(default_factory=dict)


class FreeText(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: Literal["freeText"] = "freeText"
    text: str
    account_id: int


class FileUpload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: Literal["fileUpload"] = "fileUpload"
    evidence_ref: str
    account_id: int
    chat_id: Optional[int] = None


InboundEvent = Annotated[Union[MenuAction, FreeText, FileUpload], Field(discriminator="kind")]

_event_adapter = TypeAdapter(InboundEvent)


def parse_event(data: dict) -> Union[MenuAction, FreeText, FileUpload]:
    return _event_adapter.validate_python(data)


class Notifier(Protocol):
    async def notify(
        self,
        account_id: int,
        message: str,
        attachments: Optional[list[str]] = None,
        actions: Optional[list[str]] = None,
    ) -> None:
        ...


class OutboxNotifier:
    def __init__(self):
        self.sent: list[Notification] = []

    async def notify(
        self,
        account_id: int,
        message: str,
        attachments: Optional[list[str]] = None,
        actions: Optional[list[str]] = None,
    ) -> None:
        self.sent.append(Notification(
            account_id=account_id, message=message, attachments=attachments or [], actions=actions or [],
        ))

    def for_account(self, account_id: int) -> list[Notification]:
        return [n for n in self.sent if n.account_id == account_id]


ActionHandler = Callable[[int, str], Awaitable[FlowResult]]


class EventRouter:
    """Hands classified inbound events to the workflow that owns them.

    Action tags follow ``prefix:verb[:argument]``. Exact tags are looked up
    first, then the longest matching prefix receives the remainder as its
    argument. Unknown tags fall back to the main menu.
    """

    def __init__(
        self,
        wallet: WalletService,
        topup: TopupWorkflow,
        admin: AdminAdjustFlow,
        profiles: ProfileBuilder,
        settings: Settings,
        notifier: Notifier,
    ):
        self.wallet = wallet
        self.topup = topup
        self.admin = admin
        self.profiles = profiles
        self.settings = settings
        self.notifier = notifier

        self.action_handlers: dict[str, ActionHandler] = {
            "menu:main": self._main_menu,
            "menu:help": self._static(ScreenName.HELP),
            "menu:status": lambda account_id, _: self.wallet.account_status(account_id),
            "menu:settings": self._settings_menu,
            "menu:wallet": lambda account_id, _: self.topup.show_amounts(account_id),
            "topup:cancel": lambda account_id, _: self.topup.cancel_receipt(account_id),
            "topup:pending": lambda account_id, _: self.topup.list_pending(account_id),
            "admin:menu": self._admin_menu,
            "admin:cancel": lambda account_id, _: self.admin.cancel(account_id),
            "profile:start": lambda account_id, _: self.profiles.show_apn_choices(account_id),
            "profile:apn": lambda account_id, _: self.profiles.show_apn_choices(account_id),
            "profile:menu": lambda account_id, _: self.profiles.leave_uuid_entry(account_id),
            "profile:uuid:auto": lambda account_id, _: self.profiles.generate_uuid(account_id),
            "profile:uuid:ask": lambda account_id, _: self.profiles.ask_uuid(account_id),
            "profile:god:toggle": lambda account_id, _: self.profiles.toggle_god_mode(account_id),
            "profile:cidr": lambda account_id, _: self.profiles.show_cidr_choices(account_id),
            "profile:build": lambda account_id, _: self.profiles.build(account_id),
            "action:toggle:notify": self._toggle_notifications,
        }
        self.prefix_handlers: dict[str, ActionHandler] = {
            "topup:amount:": lambda account_id, arg: self.topup.choose_amount(account_id, _amount(arg)),
            "topup:confirm:": lambda account_id, arg: self.topup.begin_awaiting_receipt(account_id, _amount(arg)),
            "topup:approve:": lambda account_id, arg: self.topup.resolve(arg, TopupDecision.APPROVE, account_id),
            "topup:reject:": lambda account_id, arg: self.topup.resolve(arg, TopupDecision.REJECT, account_id),
            "admin:adjust:": lambda account_id, arg: self.admin.start_adjust(account_id, arg),
            "profile:apn:": lambda account_id, arg: self.profiles.select_apn(account_id, arg),
            "profile:cidr:set:": lambda account_id, arg: self.profiles.select_cidr(account_id, arg),
            "action:set:lang:": self._set_language,
        }

    async def handle(self, event: Union[MenuAction, FreeText, FileUpload, dict]) -> Screen:
        if isinstance(event, dict):
            event = parse_event(event)
        try:
            if isinstance(event, MenuAction):
                result = await self.on_menu_action(event)
            elif isinstance(event, FreeText):
                result = await self.on_free_text(event)
            else:
                result = await self.on_file_upload(event)
        except InsufficientFundsError as e:
            return Screen(
                name=ScreenName.INSUFFICIENT_FUNDS,
                params={"balance": e.balance, "required": e.required},
            )
        except WalletServiceError as e:
            return Screen(name=ScreenName.ERROR, params={"code": e.code, "message": str(e)})
        except StoreError as e:
            logger.error("Store failure while handling %s for %s: %s", event.kind, event.account_id, e)
            return Screen(name=ScreenName.RETRY_LATER)

        await self.deliver(result.notifications)
        return result.screen

    async def deliver(self, notifications: list[Notification]) -> None:
        for notification in notifications:
            try:
                await self.notifier.notify(
                    notification.account_id,
                    notification.message,
                    attachments=notification.attachments,
                    actions=notification.actions,
                )
            except Exception as e:
                logger.error("Failed to notify %s: %s", notification.account_id, e)

    async def on_menu_action(self, event: MenuAction) -> FlowResult:
        tag = event.action_tag
        await self.wallet.record_action(event.account_id, tag)
        handler = self.action_handlers.get(tag)
        if handler is not None:
            return await handler(event.account_id, "")
        for prefix in sorted(self.prefix_handlers, key=len, reverse=True):
            if tag.startswith(prefix):
                return await self.prefix_handlers[prefix](event.account_id, tag[len(prefix):])
        return await self._main_menu(event.account_id, "")

    async def on_free_text(self, event: FreeText) -> FlowResult:
        account = await self.wallet.ensure_account(event.account_id)
        flow = account.flow
        if isinstance(flow, AdminAdjustState):
            if flow.step == AdjustStep.TARGET:
                return await self.admin.provide_target_id(event.account_id, event.text)
            return await self.admin.provide_amount(event.account_id, event.text)
        if isinstance(flow, AwaitingUuidFlow):
            return await self.profiles.provide_uuid(event.account_id, event.text)
        main = await self._main_menu(event.account_id, "")
        return FlowResult(screen=Screen(name=ScreenName.BUTTONS_ONLY, params=main.screen.params))

    async def on_file_upload(self, event: FileUpload) -> FlowResult:
        chat_id = event.chat_id if event.chat_id is not None else event.account_id
        return await self.topup.submit_receipt(event.account_id, chat_id, event.evidence_ref)

    async def _main_menu(self, account_id: int, _: str) -> FlowResult:
        account = await self.wallet.ensure_account(account_id)
        return FlowResult(screen=Screen(
            name=ScreenName.MAIN_MENU,
            params={"balance": account.balance, "is_admin": self.settings.is_admin(account_id)},
        ))

    def _static(self, name: ScreenName) -> ActionHandler:
        async def handler(account_id: int, _: str) -> FlowResult:
            return FlowResult(screen=Screen(name=name))
        return handler

    async def _settings_menu(self, account_id: int, _: str) -> FlowResult:
        account = await self.wallet.ensure_account(account_id)
        return FlowResult(screen=Screen(
            name=ScreenName.SETTINGS,
            params={"language": account.language, "notifications_enabled": account.notifications_enabled},
        ))

    async def _toggle_notifications(self, account_id: int, _: str) -> FlowResult:
        def _toggle(account: Account) -> None:
            account.notifications_enabled = not account.notifications_enabled

        await self.wallet.update_account(account_id, _toggle)
        return await self._settings_menu(account_id, "")

    async def _set_language(self, account_id: int, language: str) -> FlowResult:
        if not language.isalpha() or len(language) > 8:
            raise InvalidInputError(f"Unknown language {language!r}")

        def _set(account: Account) -> None:
            account.language = language.lower()

        await self.wallet.update_account(account_id, _set)
        return await self._settings_menu(account_id, "")

    async def _admin_menu(self, account_id: int, _: str) -> FlowResult:
        if not self.settings.is_admin(account_id):
            raise UnauthorizedError("Only the admin can open the admin menu")
        pending = await self.topup.pending_ids()
        return FlowResult(screen=Screen(name=ScreenName.ADMIN_MENU, params={"pending_topups": len(pending)}))


def _amount(raw: str) -> int:
    amount = parse_localized_int(raw)
    if not amount:
        raise InvalidInputError(f"Not a valid amount: {raw!r}")
    return amount
