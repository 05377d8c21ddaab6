"""Chat message models: the server-side table and the wire/cache shapes shared with clients."""

import random
import string
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as ModelField
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field, SQLModel

from agrovision.core.config import settings

_ID_ALPHABET = string.ascii_lowercase + string.digits

_sequence_lock = threading.Lock()
_last_sequence = 0


class ChatType(str, Enum):
    DIAGNOSIS = "diagnosis"
    WEATHER = "weather"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def new_message_id(epoch_ms: Optional[int] = None) -> str:
    ms = int(time.time() * 1000) if epoch_ms is None else epoch_ms
    return f"{ms}-{_random_suffix()}"


def new_session_id(chat_type: ChatType | str) -> str:
    return f"{ChatType(chat_type).value}-{int(time.time() * 1000)}-{_random_suffix()}"


def next_sequence() -> int:
    """Strictly increasing insertion counter, seeded from the wall clock in nanoseconds."""
    global _last_sequence
    with _sequence_lock:
        _last_sequence = max(time.time_ns(), _last_sequence + 1)
        return _last_sequence


class ChatMessageRecord(SQLModel, table=True):
    __tablename__ = "chat_messages"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    chat_type: str = Field(index=True, max_length=50)
    session_id: str = Field(index=True, max_length=255)
    role: str = Field(max_length=20)  # "user" | "assistant"
    content: str
    context_data: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=utc_now)
    # Breaks created_at ties in insertion order
    seq: int = Field(default_factory=next_sequence, sa_column=Column(BigInteger, nullable=False, index=True))


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(CamelModel):
    role: Role
    content: str
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    context_data: Optional[Any] = None


class ChatSession(CamelModel):
    id: str
    chat_type: ChatType
    user_id: str = "guest"
    messages: list[ChatMessage] = []
    context_data: Optional[Any] = None
    last_updated: datetime = ModelField(default_factory=utc_now)


class SessionSummary(CamelModel):
    session_id: str
    chat_type: ChatType
    last_updated: datetime
    message_count: int
    title: str


_SESSION_TITLES = {
    ChatType.DIAGNOSIS.value: "Diagnosis session",
    ChatType.WEATHER.value: "Weather session",
}


def session_title(first_message: Optional[str], chat_type: ChatType | str, limit: Optional[int] = None) -> str:
    """Preview of a session's first message, or a generic title when there is none."""
    chat_type = chat_type.value if isinstance(chat_type, ChatType) else chat_type
    if not first_message:
        return _SESSION_TITLES.get(chat_type, f"{chat_type} session")
    limit = settings.preview_length if limit is None else limit
    if len(first_message) > limit:
        return first_message[:limit] + "..."
    return first_message
