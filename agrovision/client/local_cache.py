"""Device-local storage for guest chat sessions.

Entries live under ``chat-<chatType>-<sessionId>`` in a flat key-value store, the
same shape a browser's local storage has. Each save replaces the whole session
snapshot; there is no merging, so two writers on the same key race and the last
one wins.

Nothing in here raises into the caller: storage and (de)serialization failures
are logged and reads degrade to "no session".
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as ModelValidationError

from agrovision.core.config import settings
from agrovision.core.errors import SerializationError
from agrovision.models.chat import ChatMessage, ChatSession, ChatType, utc_now

logger = logging.getLogger(__name__)

KEY_PREFIX = "chat-"


class KeyValueStore(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self, items: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class JsonFileStore(KeyValueStore):
    """Key-value store persisted as one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._read())


def cache_key(chat_type: ChatType | str, session_id: str) -> str:
    return f"{KEY_PREFIX}{ChatType(chat_type).value}-{session_id}"


def _decode(raw: str, chat_type: ChatType | str, session_id: str) -> ChatSession:
    try:
        data = json.loads(raw)
        data.setdefault("id", session_id)
        data.setdefault("chatType", ChatType(chat_type).value)
        return ChatSession.model_validate(data)
    except (ValueError, TypeError, AttributeError, ModelValidationError) as e:
        raise SerializationError(f"Corrupted cache entry for {session_id}: {e}") from e


class LocalCache:
    def __init__(self, store: KeyValueStore):
        self.store = store

    def save(
        self,
        chat_type: ChatType | str,
        session_id: str,
        messages: list[ChatMessage],
        context_data: Any = None,
    ) -> None:
        session = ChatSession(
            id=session_id,
            chat_type=chat_type,
            messages=list(messages),
            context_data=context_data,
            last_updated=utc_now(),
        )
        try:
            self.store.set_item(
                cache_key(chat_type, session_id),
                session.model_dump_json(by_alias=True),
            )
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Error saving local chat history for {session_id}: {e}")

    def load(self, chat_type: ChatType | str, session_id: str) -> Optional[ChatSession]:
        try:
            raw = self.store.get_item(cache_key(chat_type, session_id))
            if raw is None:
                return None
            return _decode(raw, chat_type, session_id)
        except (OSError, ValueError, SerializationError) as e:
            logger.error(f"Error loading local chat history for {session_id}: {e}")
            return None

    def append(
        self,
        chat_type: ChatType | str,
        session_id: str,
        message: ChatMessage,
        context_data: Any = None,
    ) -> None:
        """Add one message to a cached session, creating the entry if needed."""
        existing = self.load(chat_type, session_id)
        messages = list(existing.messages) if existing else []
        messages.append(message)
        if context_data is None and existing:
            context_data = existing.context_data
        self.save(chat_type, session_id, messages, context_data)

    def remove(self, chat_type: ChatType | str, session_id: str) -> None:
        try:
            self.store.remove_item(cache_key(chat_type, session_id))
        except (OSError, ValueError) as e:
            logger.error(f"Error removing local chat history for {session_id}: {e}")

    def purge_all(self) -> int:
        """Drop every guest chat entry. Keys owned by other features are left alone."""
        removed = 0
        try:
            for key in self.store.keys():
                if key.startswith(KEY_PREFIX):
                    self.store.remove_item(key)
                    removed += 1
        except (OSError, ValueError) as e:
            logger.error(f"Error purging local chat history: {e}")
        logger.debug(f"Purged {removed} local chat sessions")
        return removed

    def scan_sessions(self, chat_type: Optional[ChatType | str] = None) -> list[ChatSession]:
        """Every non-empty cached session, most recently updated first."""
        try:
            keys = self.store.keys()
        except (OSError, ValueError) as e:
            logger.error(f"Error scanning local chat history: {e}")
            return []

        sessions = []
        for key in keys:
            parsed = _parse_key(key)
            if parsed is None:
                continue
            key_type, session_id = parsed
            if chat_type is not None and key_type != ChatType(chat_type):
                continue
            session = self.load(key_type, session_id)
            if session and session.messages:
                sessions.append(session)

        return sorted(sessions, key=lambda s: s.last_updated, reverse=True)


def _parse_key(key: str) -> Optional[tuple[ChatType, str]]:
    if not key.startswith(KEY_PREFIX):
        return None
    chat_type, sep, session_id = key[len(KEY_PREFIX):].partition("-")
    if not sep or not session_id:
        return None
    try:
        return ChatType(chat_type), session_id
    except ValueError:
        return None


def default_cache() -> LocalCache:
    return LocalCache(JsonFileStore(settings.local_cache_path))
