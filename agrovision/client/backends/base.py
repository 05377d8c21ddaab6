"""Storage strategy for one chat type. A controller holds exactly one per identity."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from agrovision.client.local_cache import LocalCache
from agrovision.models.chat import ChatMessage, ChatType


class Delivery(str, Enum):
    STORED = "stored"  # confirmed by the authoritative store
    STRANDED = "stranded"  # server retries exhausted, written to the local cache instead
    UNDELIVERED = "undelivered"  # server retries exhausted, no fallback requested
    REJECTED = "rejected"  # refused by the server as invalid, dropped


class SessionBackend(ABC):
    authenticated: bool = False

    def __init__(self, chat_type: ChatType | str, cache: LocalCache):
        self.chat_type = ChatType(chat_type)
        self.cache = cache

    @abstractmethod
    async def load(self, session_id: str) -> list[ChatMessage]:
        """Return the stored history of a session, oldest first. Never raises."""
        ...

    @abstractmethod
    async def persist(
        self,
        session_id: str,
        new_messages: list[ChatMessage],
        snapshot: list[ChatMessage],
        context_data: Any = None,
    ) -> list[Delivery]:
        """Store ``new_messages`` in order; ``snapshot`` is the full in-memory session."""
        ...

    @abstractmethod
    def clear(self, session_id: str) -> None:
        ...
