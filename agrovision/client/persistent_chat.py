"""Client-side chat session controller.

Keeps the active session's messages in memory and decides where they are stored:
the local cache for guests, the history service for signed-in users. Messages
land in memory first and are persisted afterwards; a server write that keeps
failing is redirected into the local cache rather than lost.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from agrovision.client.backends import Delivery, SessionBackend, select_backend
from agrovision.client.backends.server import ServerBackedSession
from agrovision.client.history_client import HistoryClient
from agrovision.client.local_cache import LocalCache
from agrovision.models.chat import ChatMessage, ChatType, new_message_id, new_session_id

logger = logging.getLogger(__name__)


def _message_key(message: ChatMessage) -> tuple:
    # The server assigns its own ids, so stored copies are matched on content and stamp
    return message.role, message.content, message.timestamp


@dataclass
class User:
    id: str
    token: str


class PersistentChatController:
    def __init__(
        self,
        chat_type: ChatType | str,
        client: HistoryClient,
        cache: LocalCache,
        user: Optional[User] = None,
        session_id: Optional[str] = None,
        **server_options: Any,
    ):
        self.chat_type = ChatType(chat_type)
        self.cache = cache
        self.user = user
        self.session_id = session_id
        self.messages: list[ChatMessage] = []
        self.pending: list[ChatMessage] = []
        self.loading = False

        self._client = client
        self._server_options = server_options
        self._write_lock = asyncio.Lock()
        self._last_stamp_ms = 0
        self.backend = self._select_backend()

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    def _select_backend(self) -> SessionBackend:
        token = self.user.token if self.user else None
        return select_backend(self.chat_type, self.cache, self._client.with_token(token), **self._server_options)

    # --- session lifecycle ---

    def initialize_session(self, session_id: Optional[str] = None) -> str:
        """Make ``session_id`` (or a fresh id) the active session with no messages. Does not load."""
        self.session_id = session_id or new_session_id(self.chat_type)
        self.messages = []
        self.pending = []
        logger.debug(f"Initialized {self.chat_type.value} session {self.session_id}")
        return self.session_id

    async def hydrate(self) -> None:
        """Replace in-memory messages with the stored history of the active session."""
        if not self.session_id:
            return
        session_id = self.session_id
        self.loading = True
        try:
            messages = await self.backend.load(session_id)
        finally:
            self.loading = False

        if self.session_id != session_id:
            logger.debug(f"Discarding history of {session_id}, session changed while loading")
            return

        # Writes still in flight are not in the loaded history yet
        loaded_ids = {m.id for m in messages}
        loaded_keys = {_message_key(m) for m in messages}
        unsaved = [m for m in self.pending if m.id not in loaded_ids and _message_key(m) not in loaded_keys]
        if unsaved:
            logger.debug(f"Keeping {len(unsaved)} unsaved messages of {session_id} after reload")
        self.messages = messages + unsaved

    async def mount(self) -> str:
        if not self.session_id:
            self.initialize_session()
        await self.hydrate()
        return self.session_id  # type: ignore[return-value]

    async def switch_session(self, session_id: Optional[str] = None) -> str:
        session_id = self.initialize_session(session_id)
        await self.hydrate()
        return session_id

    async def set_user(self, user: Optional[User]) -> None:
        """React to an identity change: pick the matching backend, migrate, reload."""
        was_authenticated = self.is_authenticated
        self.user = user
        self.backend = self._select_backend()
        logger.info(f"Chat identity is now {user.id if user else 'guest'}")

        if not self.session_id:
            return
        if user is not None and not was_authenticated and self.messages:
            await self.migrate_local_to_server()
        await self.hydrate()

    async def sign_out(self) -> None:
        removed = self.cache.purge_all()
        logger.debug(f"Signed out, purged {removed} guest sessions")
        await self.set_user(None)

    # --- writes ---

    def _stamp(self, message: ChatMessage, epoch_ms: int) -> ChatMessage:
        return message.model_copy(
            update={
                "id": new_message_id(epoch_ms),
                "timestamp": datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc),
            }
        )

    async def add_message(self, message: ChatMessage, context_data: Any = None) -> Optional[ChatMessage]:
        """Append one message and persist it. Blank messages are dropped."""
        if not message.content or not message.content.strip():
            logger.warning("Empty message, not saving")
            return None
        stored = await self._append([message], context_data)
        return stored[0]

    async def add_messages(self, batch: list[ChatMessage], context_data: Any = None) -> list[ChatMessage]:
        """Append several messages as one operation, keeping their relative order."""
        messages = [m for m in batch if m.content and m.content.strip()]
        if len(messages) < len(batch):
            logger.warning(f"Dropping {len(batch) - len(messages)} empty messages")
        if not messages:
            return []
        return await self._append(messages, context_data)

    async def _append(self, batch: list[ChatMessage], context_data: Any) -> list[ChatMessage]:
        if not self.session_id:
            logger.error("No active session, initializing one")
            self.initialize_session()
        session_id: str = self.session_id  # type: ignore[assignment]

        # Same-tick messages get base + index milliseconds so they never tie
        base = max(int(time.time() * 1000), self._last_stamp_ms + 1)
        stamped = [self._stamp(m, base + i) for i, m in enumerate(batch)]
        self._last_stamp_ms = base + len(batch) - 1

        self.messages.extend(stamped)
        self.pending.extend(stamped)
        snapshot = list(self.messages)

        async with self._write_lock:
            try:
                outcomes = await self.backend.persist(session_id, stamped, snapshot, context_data)
            finally:
                done = {m.id for m in stamped}
                self.pending = [m for m in self.pending if m.id not in done]

        stranded = outcomes.count(Delivery.STRANDED)
        if stranded:
            logger.warning(f"{stranded} messages of {session_id} were kept in the local cache")
        return stamped

    def clear_chat(self) -> None:
        """Forget the in-memory conversation. Guests also lose the cached copy."""
        self.messages = []
        self.pending = []
        if self.session_id:
            self.backend.clear(self.session_id)

    # --- reconciliation ---

    async def _replay_cached(self, session_id: str) -> int:
        backend = self.backend
        if not isinstance(backend, ServerBackedSession):
            return 0

        cached = self.cache.load(self.chat_type, session_id)
        if cached is None:
            return 0

        delivered = 0
        undelivered = []
        async with self._write_lock:
            for message in cached.messages:
                outcome = await backend.deliver(session_id, message, cached.context_data, fallback=False)
                if outcome == Delivery.STORED:
                    delivered += 1
                elif outcome == Delivery.UNDELIVERED:
                    undelivered.append(message)

        if undelivered:
            self.cache.save(self.chat_type, session_id, undelivered, cached.context_data)
            logger.warning(f"{len(undelivered)} messages of {session_id} stay in the local cache")
        else:
            self.cache.remove(self.chat_type, session_id)

        logger.info(f"Moved {delivered} cached messages of {session_id} to the server")
        return delivered

    async def migrate_local_to_server(self) -> int:
        """Replay the active session's cached messages to the server, then drop the cache entry."""
        if not self.is_authenticated or not self.session_id:
            return 0
        return await self._replay_cached(self.session_id)

    async def sweep_stranded(self) -> int:
        """Retry every cached session of this chat type against the server."""
        if not self.is_authenticated:
            return 0
        total = 0
        for session in self.cache.scan_sessions(self.chat_type):
            total += await self._replay_cached(session.id)
        return total
