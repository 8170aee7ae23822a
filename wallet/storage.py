from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional


MAX_UPDATE_ATTEMPTS = 10


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    pass


class StoreConflictError(StoreError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore(ABC):
    """Async key/value persistence with optional per-key expiry.

    Values are opaque strings. ``expires_at`` is absolute; an entry whose
    expiry has passed behaves exactly like a missing key.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str, expires_at: Optional[datetime] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; True only if a live value was removed by this call."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Write ``value`` only if the live value still equals ``expected``.

        ``expected=None`` means the key must be absent. When ``expires_at`` is
        None an existing entry keeps its current expiry.
        """

    async def update(
        self,
        key: str,
        mutate: Callable[[Optional[str]], str],
        expires_at: Optional[datetime] = None,
        attempts: int = MAX_UPDATE_ATTEMPTS,
    ) -> str:
        for _ in range(attempts):
            current = await self.get(key)
            new_value = mutate(current)
            if await self.compare_and_set(key, current, new_value, expires_at):
                return new_value
        raise StoreConflictError(f"Gave up updating {key!r} after {attempts} attempts")


class InMemoryStorage(KeyValueStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.entries: dict[str, tuple[str, Optional[datetime]]] = {}

    def _live(self, key: str) -> Optional[tuple[str, Optional[datetime]]]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self.entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def put(self, key: str, value: str, expires_at: Optional[datetime] = None) -> None:
        self.entries[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        if self._live(key) is None:
            return False
        del self.entries[key]
        return True

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        entry = self._live(key)
        current = entry[0] if entry else None
        if current != expected:
            return False
        if expires_at is None and entry is not None:
            expires_at = entry[1]
        self.entries[key] = (value, expires_at)
        return True

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in list(self.entries) if k.startswith(prefix) and self._live(k)]
