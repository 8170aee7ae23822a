import asyncio
import plistlib

import pytest

from bot.artifact import build_mobileconfig
from bot.profiles import ProfileBuilder
from conftest import USER_ID
from wallet.models import AwaitingUuidFlow, IdleFlow, ScreenName
from wallet.service import InsufficientFundsError, InvalidInputError


ROOT_UUID = "0f8fad5b-d9cb-469f-a165-70867728950e"


@pytest.fixture
def builder(wallet, gate, settings):
    return ProfileBuilder(wallet, gate, settings)


async def _ready_draft(builder):
    await builder.select_apn(USER_ID, "mcinet")
    await builder.ask_uuid(USER_ID)
    await builder.provide_uuid(USER_ID, ROOT_UUID)


class TestArtifact:
    """Tests for the rendered configuration profile."""

    def test_profile_is_valid_plist(self):
        """Test that the artifact parses and carries the chosen values."""
        profile = plistlib.loads(build_mobileconfig(ROOT_UUID, "mcinet", "10.0.0.0/8").encode())

        assert profile["PayloadUUID"] == ROOT_UUID
        cellular, vpn, proxy, extra = profile["PayloadContent"]
        assert cellular["APNs"][0]["Name"] == "mcinet"
        assert proxy["ExclusionList"] == ["localhost", "127.0.0.1", "10.0.0.0/8"]

    def test_bad_cidr_falls_back(self):
        """Test that an invalid CIDR is replaced by the fallback range."""
        profile = plistlib.loads(build_mobileconfig(ROOT_UUID, "mcinet", "nonsense").encode())
        assert profile["PayloadContent"][2]["ExclusionList"][-1] == "169.254.0.0/16"


class TestProfileDraft:
    """Tests for editing the profile draft."""

    @pytest.mark.asyncio
    async def test_select_apn(self, builder, wallet):
        """Test choosing an operator."""
        result = await builder.select_apn(USER_ID, "mtnirancell")
        assert result.screen.name == ScreenName.PROFILE_MENU
        assert result.screen.params["profile"]["apn"] == "mtnirancell"

    @pytest.mark.asyncio
    async def test_unknown_apn(self, builder):
        """Test that only listed operators are accepted."""
        with pytest.raises(InvalidInputError):
            await builder.select_apn(USER_ID, "unknown")

    @pytest.mark.asyncio
    async def test_manual_uuid(self, builder, wallet):
        """Test typing a root UUID."""
        result = await builder.ask_uuid(USER_ID)
        assert result.screen.name == ScreenName.PROFILE_ASK_UUID
        assert isinstance((await wallet.get_account(USER_ID)).flow, AwaitingUuidFlow)

        await builder.provide_uuid(USER_ID, f"  {ROOT_UUID.upper()} ")
        account = await wallet.get_account(USER_ID)
        assert account.profile.root_uuid == ROOT_UUID.upper()
        assert isinstance(account.flow, IdleFlow)

    @pytest.mark.asyncio
    async def test_invalid_uuid_keeps_waiting(self, builder, wallet):
        """Test that a non v4 UUID is refused."""
        await builder.ask_uuid(USER_ID)
        with pytest.raises(InvalidInputError):
            await builder.provide_uuid(USER_ID, "0f8fad5b-d9cb-169f-a165-70867728950e")
        assert isinstance((await wallet.get_account(USER_ID)).flow, AwaitingUuidFlow)

    @pytest.mark.asyncio
    async def test_generate_uuid(self, builder, wallet):
        """Test generating a root UUID."""
        await builder.generate_uuid(USER_ID)
        account = await wallet.get_account(USER_ID)
        assert account.profile.root_uuid

    @pytest.mark.asyncio
    async def test_god_mode_and_cidr(self, builder, wallet):
        """Test toggling god mode and choosing a CIDR."""
        await builder.toggle_god_mode(USER_ID)
        await builder.select_cidr(USER_ID, "10.0.0.0/8")
        account = await wallet.get_account(USER_ID)
        assert account.profile.god_mode is True
        assert account.profile.selected_cidr == "10.0.0.0/8"

        with pytest.raises(InvalidInputError):
            await builder.select_cidr(USER_ID, "1.2.3.4/32")


class TestBuild:
    """Tests for selling a built profile."""

    @pytest.mark.asyncio
    async def test_build_requires_apn_and_uuid(self, builder, wallet):
        """Test that an incomplete draft cannot be built."""
        await wallet.adjust_balance(USER_ID, 250000, "topup-approved")
        with pytest.raises(InvalidInputError):
            await builder.build(USER_ID)
        await builder.select_apn(USER_ID, "mcinet")
        with pytest.raises(InvalidInputError):
            await builder.build(USER_ID)
        assert await wallet.get_balance(USER_ID) == 250000

    @pytest.mark.asyncio
    async def test_build_charges_and_issues_link(self, builder, wallet, gate):
        """Test that building spends the cost and issues a gated link."""
        await wallet.adjust_balance(USER_ID, 250000, "topup-approved")
        await _ready_draft(builder)

        result = await builder.build(USER_ID)

        assert result.screen.name == ScreenName.ARTIFACT_READY
        assert result.screen.params["balance"] == 0
        assert result.screen.params["url"].startswith("https://bot.example.com/dl/")
        account = await wallet.get_account(USER_ID)
        assert account.balance == 0
        assert account.profile_counters == {"mcinet": 1}
        assert [e.reason for e in await wallet.balance_history(USER_ID)] == ["topup-approved", "profile-build"]

        [notice] = result.notifications
        assert notice.account_id == USER_ID
        record_id = result.screen.params["url"].rsplit("/", 1)[-1]
        record = await gate.describe(record_id)
        assert f"PIN: {record.pin}" in notice.message
        assert ROOT_UUID in record.payload

    @pytest.mark.asyncio
    async def test_build_without_funds_is_not_charged(self, builder, wallet):
        """Test that the pre-check refuses before any balance change."""
        await wallet.adjust_balance(USER_ID, 250000, "topup-approved")
        await _ready_draft(builder)
        await builder.build(USER_ID)

        with pytest.raises(InsufficientFundsError):
            await builder.build(USER_ID)

        account = await wallet.get_account(USER_ID)
        assert account.balance == 0
        assert account.profile_counters == {"mcinet": 1}
        assert len(await wallet.balance_history(USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_double_build_charges_once(self, builder, wallet, storage):
        """Test that two interleaved builds sell one artifact for one payment."""
        await wallet.adjust_balance(USER_ID, 250000, "topup-approved")
        await _ready_draft(builder)

        results = await asyncio.gather(builder.build(USER_ID), builder.build(USER_ID), return_exceptions=True)

        assert sum(isinstance(r, InsufficientFundsError) for r in results) == 1
        account = await wallet.get_account(USER_ID)
        assert account.balance == 0
        assert account.profile_counters == {"mcinet": 1}
        history = await wallet.balance_history(USER_ID)
        assert [(e.delta, e.before, e.after) for e in history] == [(250000, 0, 250000), (-250000, 250000, 0)]
        assert len(storage.keys("download:")) == 1
