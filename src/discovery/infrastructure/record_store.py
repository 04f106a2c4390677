from __future__ import annotations

from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..domain.errors import PersistenceError
from ..domain.models import ConversationProgress, NavigationState
from .kv_store import KeyValueStore

SESSION_PREFIX = "session:"
CONVERSATION_PREFIX = "conversation:"

RecordT = TypeVar("RecordT", bound=BaseModel)


class RecordStore(Generic[RecordT]):
    """Typed view over one key prefix of a ``KeyValueStore``.

    Records are serialized as pydantic JSON; the underlying store only
    ever sees opaque bytes.
    """

    def __init__(self, kv: KeyValueStore, prefix: str, model: Type[RecordT]) -> None:
        self._kv = kv
        self._prefix = prefix
        self._model = model

    def key_for(self, record_id: str) -> str:
        return f"{self._prefix}{record_id}"

    def load(self, record_id: str) -> Optional[RecordT]:
        payload = self._kv.read(self.key_for(record_id))
        if payload is None:
            return None
        try:
            return self._model.model_validate_json(payload)
        except ValidationError as exc:
            raise PersistenceError(f"Corrupt record at {self.key_for(record_id)!r}") from exc

    def save(self, record_id: str, record: RecordT) -> None:
        self._kv.upsert(self.key_for(record_id), record.model_dump_json().encode("utf-8"))

    def delete(self, record_id: str) -> None:
        self._kv.delete(self.key_for(record_id))


def session_store(kv: KeyValueStore) -> RecordStore[NavigationState]:
    return RecordStore(kv, SESSION_PREFIX, NavigationState)


def conversation_store(kv: KeyValueStore) -> RecordStore[ConversationProgress]:
    return RecordStore(kv, CONVERSATION_PREFIX, ConversationProgress)
