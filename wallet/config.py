import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Settings(BaseModel):
    admin_id: int
    profile_cost: int = Field(default=250000, ge=0)
    topup_amounts: tuple[int, ...] = (250000, 500000, 1000000)
    download_ttl: timedelta = timedelta(hours=24)
    max_downloads: int = Field(default=3, ge=1)
    pin_length: int = Field(default=6, ge=4, le=12)
    history_cap: int = Field(default=50, ge=1)
    card_number: str = ""
    card_holder: str = ""
    public_base_url: str = "http://localhost:8000"
    session_cookie_name: str = "dl_session"
    cookie_secure: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("topup_amounts")
    @classmethod
    def _positive_amounts(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(amount <= 0 for amount in value):
            raise ValueError("top-up amounts must be positive")
        return value

    def is_admin(self, account_id: Optional[int]) -> bool:
        return account_id is not None and account_id == self.admin_id

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        admin_id = os.getenv("ADMIN_ID")
        if not admin_id:
            raise RuntimeError("ADMIN_ID is not set")

        values: dict = {"admin_id": int(admin_id)}
        if os.getenv("PROFILE_COST"):
            values["profile_cost"] = int(os.environ["PROFILE_COST"])
        if os.getenv("TOPUP_AMOUNTS"):
            values["topup_amounts"] = tuple(
                int(part) for part in os.environ["TOPUP_AMOUNTS"].split(",") if part.strip()
            )
        if os.getenv("DOWNLOAD_TTL_SECONDS"):
            values["download_ttl"] = timedelta(seconds=int(os.environ["DOWNLOAD_TTL_SECONDS"]))
        if os.getenv("MAX_DOWNLOADS"):
            values["max_downloads"] = int(os.environ["MAX_DOWNLOADS"])
        if os.getenv("PIN_LENGTH"):
            values["pin_length"] = int(os.environ["PIN_LENGTH"])
        if os.getenv("HISTORY_CAP"):
            values["history_cap"] = int(os.environ["HISTORY_CAP"])
        for name in ("card_number", "card_holder", "public_base_url", "session_cookie_name"):
            raw = os.getenv(name.upper())
            if raw:
                values[name] = raw
        if os.getenv("COOKIE_SECURE"):
            values["cookie_secure"] = os.environ["COOKIE_SECURE"].lower() in ("1", "true", "yes")
        return cls(**values)
