import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Settings
from .history import HistoryLog
from .models import DownloadAccessRecord, DownloadHistoryEntry, HistoryTopic, IssuedLink
from .service import (
    DownloadLimitReachedError,
    InvalidInputError,
    RecordExpiredError,
    RecordNotFoundError,
    UnauthorizedError,
)
from .storage import KeyValueStore, utcnow


logger = logging.getLogger(__name__)

MAX_BOUND_SESSIONS = 5


class DownloadGate:
    """Access control around generated artifacts.

    A fetch needs the record's PIN and a session token minted by a landing
    page visit. Every mutation is a compare-and-set on the stored record, so
    concurrent fetches can never push ``downloads_used`` past the cap.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        settings: Settings,
        history: Optional[HistoryLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.settings = settings
        self.history = history
        self.clock = clock

    @staticmethod
    def record_key(record_id: str) -> str:
        return f"download:{record_id}"

    def generate_pin(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.settings.pin_length))

    def link_url(self, record_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/dl/{record_id}"

    async def issue(
        self,
        owner_account_id: int,
        payload: str,
        pin: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        max_downloads: Optional[int] = None,
        filename: str = "config.mobileconfig",
    ) -> IssuedLink:
        if pin is None:
            pin = self.generate_pin()
        elif len(pin) != self.settings.pin_length or not (pin.isascii() and pin.isdigit()):
            raise InvalidInputError(f"A PIN must be {self.settings.pin_length} digits")

        now = self.clock()
        record = DownloadAccessRecord(
            id=secrets.token_urlsafe(16),
            owner_account_id=owner_account_id,
            payload=payload,
            filename=filename,
            pin=pin,
            max_downloads=max_downloads or self.settings.max_downloads,
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.settings.download_ttl),
        )
        await self.storage.put(self.record_key(record.id), record.model_dump_json(), expires_at=record.expires_at)
        logger.info("Issued download %s for %s, expires %s", record.id, owner_account_id, record.expires_at)
        return IssuedLink(
            id=record.id, pin=record.pin, expires_at=record.expires_at, max_downloads=record.max_downloads,
        )

    def _parse(self, record_id: str, raw: Optional[str]) -> DownloadAccessRecord:
        if raw is None:
            raise RecordNotFoundError(f"Download {record_id} not found")
        record = DownloadAccessRecord.model_validate_json(raw)
        if record.is_expired(self.clock()):
            raise RecordExpiredError(f"Download {record_id} has expired")
        return record

    async def describe(self, record_id: str) -> DownloadAccessRecord:
        return self._parse(record_id, await self.storage.get(self.record_key(record_id)))

    async def bind_session(self, record_id: str, existing_token: Optional[str] = None) -> str:
        record = await self.describe(record_id)
        if existing_token and existing_token in record.bound_session_ids:
            return existing_token

        token = secrets.token_urlsafe(24)

        def _bind(raw: Optional[str]) -> str:
            current = self._parse(record_id, raw)
            # Oldest sessions are dropped first.
            current.bound_session_ids = (current.bound_session_ids + [token])[-MAX_BOUND_SESSIONS:]
            return current.model_dump_json()

        await self.storage.update(self.record_key(record_id), _bind)
        return token

    async def fetch(self, record_id: str, pin: Optional[str], session_token: Optional[str]) -> DownloadAccessRecord:
        consumed: list[DownloadAccessRecord] = []

        def _consume(raw: Optional[str]) -> str:
            record = self._parse(record_id, raw)
            if record.used_up or record.downloads_used >= record.max_downloads:
                raise DownloadLimitReachedError(f"Download {record_id} has no downloads left")
            pin_ok = secrets.compare_digest((pin or "").encode(), record.pin.encode())
            if not pin_ok or session_token not in record.bound_session_ids:
                raise UnauthorizedError(f"Wrong PIN or session for download {record_id}")
            record.downloads_used += 1
            record.used_up = record.downloads_used >= record.max_downloads
            consumed[:] = [record]
            return record.model_dump_json()

        try:
            await self.storage.update(self.record_key(record_id), _consume)
        except UnauthorizedError:
            logger.warning("Rejected fetch of download %s", record_id)
            raise

        record = consumed[0]
        if self.history is not None:
            await self.history.append(HistoryTopic.DOWNLOADS, record.owner_account_id, DownloadHistoryEntry(
                at=self.clock(), record_id=record_id, downloads_used=record.downloads_used,
            ))
        return record

    async def fetch_payload(self, record_id: str, pin: Optional[str], session_token: Optional[str]) -> str:
        record = await self.fetch(record_id, pin, session_token)
        return record.payload

    async def download_history(self, owner_account_id: int) -> list[DownloadHistoryEntry]:
        if self.history is None:
            return []
        return await self.history.read(HistoryTopic.DOWNLOADS, owner_account_id, DownloadHistoryEntry)
