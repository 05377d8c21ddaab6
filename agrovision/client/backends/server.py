"""Authenticated sessions: the history service is authoritative."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from agrovision.client.backends.base import Delivery, SessionBackend
from agrovision.client.history_client import HistoryClient
from agrovision.client.local_cache import LocalCache
from agrovision.core.config import settings
from agrovision.core.errors import NetworkError, PersistenceError, ValidationError
from agrovision.models.chat import ChatMessage, ChatType

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ServerBackedSession(SessionBackend):
    authenticated = True

    def __init__(
        self,
        chat_type: ChatType | str,
        cache: LocalCache,
        client: HistoryClient,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__(chat_type, cache)
        self.client = client
        self.attempts = max(1, settings.history_retry_attempts if attempts is None else attempts)
        self.backoff = settings.history_retry_backoff if backoff is None else backoff
        self._sleep = sleep

    async def load(self, session_id: str) -> list[ChatMessage]:
        try:
            messages = await self.client.list_messages(self.chat_type, session_id)
        except (NetworkError, ValidationError) as e:
            logger.error(f"Error loading server chat history for {session_id}: {e}")
            return []
        logger.debug(f"Loaded {len(messages)} messages from server for {session_id}")
        return messages

    async def persist(
        self,
        session_id: str,
        new_messages: list[ChatMessage],
        snapshot: list[ChatMessage],
        context_data: Any = None,
        fallback: bool = True,
    ) -> list[Delivery]:
        # Sequential on purpose: the server orders by arrival when timestamps tie
        outcomes = []
        for message in new_messages:
            outcomes.append(await self.deliver(session_id, message, context_data, fallback=fallback))
        return outcomes

    async def deliver(
        self,
        session_id: str,
        message: ChatMessage,
        context_data: Any = None,
        fallback: bool = True,
    ) -> Delivery:
        """Send one message with bounded retries, then fall back to the local cache."""
        for attempt in range(1, self.attempts + 1):
            try:
                await self.client.append(self.chat_type, session_id, message, context_data)
                return Delivery.STORED
            except ValidationError as e:
                logger.error(f"History service rejected message {message.id}: {e}")
                return Delivery.REJECTED
            except PersistenceError as e:
                logger.error(f"Attempt {attempt}/{self.attempts} to save message {message.id} failed: {e}")
                if attempt < self.attempts:
                    await self._sleep(self.backoff * attempt)

        if not fallback:
            return Delivery.UNDELIVERED

        logger.warning(f"All attempts failed, saving message {message.id} to the local cache")
        self.cache.append(self.chat_type, session_id, message, context_data)
        return Delivery.STRANDED

    def clear(self, session_id: str) -> None:
        # Server-side purge is done through the history browser's delete
        logger.debug(f"Cleared {session_id} in memory only")
