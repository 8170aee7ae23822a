from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_FALLBACK_CIDR = "169.254.0.0/16"


class AdjustMode(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class AdjustStep(str, Enum):
    TARGET = "target"
    AMOUNT = "amount"


class TopupDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class TopupOutcome(str, Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class LedgerReason(str, Enum):
    TOPUP_APPROVED = "topup-approved"
    ADMIN_ADJUST = "admin-adjust"
    PROFILE_BUILD = "profile-build"


class HistoryTopic(str, Enum):
    BALANCE = "balance"
    TOPUP = "topup"
    DOWNLOADS = "downloads"


class IdleFlow(BaseModel):
    kind: Literal["idle"] = "idle"


class AwaitingReceiptFlow(BaseModel):
    kind: Literal["awaiting_receipt"] = "awaiting_receipt"
    expected_amount: int = Field(..., gt=0)


class AwaitingUuidFlow(BaseModel):
    kind: Literal["awaiting_uuid"] = "awaiting_uuid"


class AdminAdjustState(BaseModel):
    kind: Literal["admin_adjust"] = "admin_adjust"
    step: AdjustStep
    mode: AdjustMode
    target_account_id: Optional[int] = None

    @model_validator(mode="after")
    def _target_known_before_amount(self) -> "AdminAdjustState":
        if self.step == AdjustStep.AMOUNT and self.target_account_id is None:
            raise ValueError("amount step requires a target account")
        return self


AccountFlowState = Annotated[
    Union[IdleFlow, AwaitingReceiptFlow, AwaitingUuidFlow, AdminAdjustState],
    Field(discriminator="kind"),
]


class ProfileDraft(BaseModel):
    apn: Optional[str] = None
    root_uuid: Optional[str] = None
    god_mode: bool = False
    selected_cidr: str = DEFAULT_FALLBACK_CIDR


class Account(BaseModel):
    account_id: int
    balance: int = Field(default=0, ge=0)
    first_seen_at: datetime
    profile_counters: dict[str, int] = Field(default_factory=dict)
    flow: AccountFlowState = Field(default_factory=IdleFlow)
    selected_amount: Optional[int] = None
    profile: ProfileDraft = Field(default_factory=ProfileDraft)
    language: str = "fa"
    notifications_enabled: bool = True
    last_action: Optional[str] = None
    last_action_at: Optional[datetime] = None

    @property
    def is_idle(self) -> bool:
        return isinstance(self.flow, IdleFlow)


class LedgerEntry(BaseModel):
    at: datetime
    delta: int
    before: int
    after: int
    reason: str
    meta: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class BalanceChange(BaseModel):
    account_id: int
    before: int
    after: int

    @property
    def applied_delta(self) -> int:
        return self.after - self.before


class TopupRequest(BaseModel):
    id: str
    account_id: int
    chat_id: int
    amount: int = Field(..., gt=0)
    evidence_ref: str
    created_at: datetime


class TopupHistoryEntry(BaseModel):
    at: datetime
    request_id: str
    amount: int
    outcome: TopupOutcome
    admin_id: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class DownloadAccessRecord(BaseModel):
    id: str
    owner_account_id: int
    payload: str
    filename: str = "config.mobileconfig"
    pin: str
    bound_session_ids: list[str] = Field(default_factory=list)
    downloads_used: int = Field(default=0, ge=0)
    max_downloads: int = Field(..., ge=1)
    used_up: bool = False
    created_at: datetime
    expires_at: datetime

    @property
    def remaining_downloads(self) -> int:
        if self.used_up:
            return 0
        return max(0, self.max_downloads - self.downloads_used)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class DownloadHistoryEntry(BaseModel):
    at: datetime
    record_id: str
    downloads_used: int

    model_config = ConfigDict(frozen=True)


class IssuedLink(BaseModel):
    id: str
    pin: str
    expires_at: datetime
    max_downloads: int


class ScreenName(str, Enum):
    MAIN_MENU = "main_menu"
    HELP = "help"
    SETTINGS = "settings"
    STATUS = "status"
    BUTTONS_ONLY = "buttons_only"
    TOPUP_AMOUNTS = "topup_amounts"
    TOPUP_PAYMENT_DETAILS = "topup_payment_details"
    AWAITING_RECEIPT = "awaiting_receipt"
    RECEIPT_SUBMITTED = "receipt_submitted"
    TOPUP_PENDING_LIST = "topup_pending_list"
    TOPUP_RESOLVED = "topup_resolved"
    ADMIN_MENU = "admin_menu"
    ADMIN_ASK_TARGET = "admin_ask_target"
    ADMIN_ASK_AMOUNT = "admin_ask_amount"
    ADMIN_ADJUSTED = "admin_adjusted"
    ADMIN_CANCELLED = "admin_cancelled"
    PROFILE_MENU = "profile_menu"
    PROFILE_APN_CHOICES = "profile_apn_choices"
    PROFILE_CIDR_CHOICES = "profile_cidr_choices"
    PROFILE_ASK_UUID = "profile_ask_uuid"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ARTIFACT_READY = "artifact_ready"
    ERROR = "error"
    RETRY_LATER = "retry_later"


class Screen(BaseModel):
    name: ScreenName
    params: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    account_id: int
    message: str
    attachments: list[str] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)


class FlowResult(BaseModel):
    screen: Screen
    notifications: list[Notification] = Field(default_factory=list)
