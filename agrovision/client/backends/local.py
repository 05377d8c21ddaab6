"""Guest sessions: the local cache is authoritative."""

import logging
from typing import Any

from agrovision.client.backends.base import Delivery, SessionBackend
from agrovision.models.chat import ChatMessage

logger = logging.getLogger(__name__)


class LocalBackedSession(SessionBackend):
    authenticated = False

    async def load(self, session_id: str) -> list[ChatMessage]:
        session = self.cache.load(self.chat_type, session_id)
        return list(session.messages) if session else []

    async def persist(
        self,
        session_id: str,
        new_messages: list[ChatMessage],
        snapshot: list[ChatMessage],
        context_data: Any = None,
    ) -> list[Delivery]:
        if context_data is None:
            existing = self.cache.load(self.chat_type, session_id)
            context_data = existing.context_data if existing else None
        # Whole-snapshot overwrite, never incremental
        self.cache.save(self.chat_type, session_id, snapshot, context_data)
        logger.debug(f"Saved {len(snapshot)} messages locally for {session_id}")
        return [Delivery.STORED for _ in new_messages]

    def clear(self, session_id: str) -> None:
        self.cache.remove(self.chat_type, session_id)
