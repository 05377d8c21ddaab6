"""Past-conversation browser: server history first, local cache when the server is out of reach."""

import logging
from typing import Optional

from agrovision.client.history_client import HistoryClient
from agrovision.client.local_cache import LocalCache
from agrovision.core.errors import NetworkError, PersistenceError, ValidationError
from agrovision.models.chat import ChatMessage, ChatSession, ChatType, SessionSummary, session_title

logger = logging.getLogger(__name__)


def _summarize(session: ChatSession) -> SessionSummary:
    first = session.messages[0].content if session.messages else None
    return SessionSummary(
        session_id=session.id,
        chat_type=session.chat_type,
        last_updated=session.last_updated,
        message_count=len(session.messages),
        title=session_title(first, session.chat_type),
    )


class HistoryBrowser:
    def __init__(self, client: HistoryClient, cache: LocalCache):
        self.client = client
        self.cache = cache

    async def load_sessions(self, chat_type: Optional[ChatType | str] = None) -> list[SessionSummary]:
        try:
            sessions = await self.client.list_sessions()
        except NetworkError as e:
            logger.error(f"Error loading chat history from API, using local cache: {e}")
            sessions = [_summarize(s) for s in self.cache.scan_sessions()]

        if chat_type is not None:
            sessions = [s for s in sessions if s.chat_type == ChatType(chat_type)]
        return sessions

    async def load_messages(self, chat_type: ChatType | str, session_id: str) -> list[ChatMessage]:
        try:
            return await self.client.list_messages(chat_type, session_id)
        except (NetworkError, ValidationError) as e:
            logger.error(f"Error loading session messages for {session_id}: {e}")

        cached = self.cache.load(chat_type, session_id)
        return list(cached.messages) if cached else []

    async def delete_session(self, chat_type: ChatType | str, session_id: str) -> bool:
        if not self.client.is_authenticated:
            self.cache.remove(chat_type, session_id)
            return True

        try:
            await self.client.delete_session(chat_type, session_id)
        except (PersistenceError, ValidationError) as e:
            logger.error(f"Error deleting session {session_id}: {e}")
            return False
        return True
