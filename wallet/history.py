import json
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

from .models import HistoryTopic
from .storage import KeyValueStore


EntryT = TypeVar("EntryT", bound=BaseModel)


class HistoryLog:
    """Capped, append-only history lists kept one store value per subject.

    Oldest entries are evicted first once ``cap`` is reached. Appends go
    through ``compare_and_set`` so concurrent writers do not drop entries.
    """

    def __init__(self, storage: KeyValueStore, cap: int = 50):
        self.storage = storage
        self.cap = cap

    @staticmethod
    def key(topic: HistoryTopic, subject: int) -> str:
        return f"history:{topic.value}:{subject}"

    async def append(self, topic: HistoryTopic, subject: int, entry: BaseModel) -> None:
        item = entry.model_dump(mode="json")

        def _append(raw: Optional[str]) -> str:
            entries = json.loads(raw) if raw else []
            entries.append(item)
            return json.dumps(entries[-self.cap:])

        await self.storage.update(self.key(topic, subject), _append)

    async def read(self, topic: HistoryTopic, subject: int, model: Type[EntryT]) -> list[EntryT]:
        raw = await self.storage.get(self.key(topic, subject))
        if not raw:
            return []
        return [model.model_validate(item) for item in json.loads(raw)]
