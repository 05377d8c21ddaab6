"""One user turn of a chat: guarded send, assistant reply, persistence."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from agrovision.client.persistent_chat import PersistentChatController
from agrovision.models.chat import ChatMessage, Role

logger = logging.getLogger(__name__)

# (user text, recent history, context) -> assistant reply
ReplyGenerator = Callable[[str, list[ChatMessage], Any], Awaitable[str]]

HISTORY_WINDOW = 10
EMPTY_REPLY = "Sorry, I could not generate a response."


class SendGuard:
    """Test-and-set flag: only one send may be outstanding at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()


@dataclass
class TurnResult:
    user_message: Optional[ChatMessage] = None
    reply: Optional[ChatMessage] = None
    error: Optional[str] = None
    dropped: bool = False


class ChatTurnRunner:
    def __init__(
        self,
        controller: PersistentChatController,
        reply: ReplyGenerator,
        history_window: int = HISTORY_WINDOW,
    ):
        self.controller = controller
        self.reply = reply
        self.history_window = history_window
        self.guard = SendGuard()

    async def send(self, text: str, context_data: Any = None) -> TurnResult:
        # Checked before anything is awaited; a second send is dropped, not queued
        if not self.guard.try_acquire():
            logger.debug("A message is already being sent, ignoring")
            return TurnResult(dropped=True)

        try:
            content = text.strip()
            if not content:
                return TurnResult(dropped=True)

            user_message = ChatMessage(role=Role.USER, content=content)
            history = self.controller.messages[-self.history_window:]

            try:
                answer = await self.reply(content, history, context_data)
            except Exception as e:
                logger.error(f"Error sending message: {e}")
                stored = await self.controller.add_message(user_message, context_data)
                return TurnResult(user_message=stored, error=str(e))

            if not answer or not answer.strip():
                answer = EMPTY_REPLY

            user_stored, reply_stored = await self.controller.add_messages(
                [user_message, ChatMessage(role=Role.ASSISTANT, content=answer)],
                context_data,
            )
            return TurnResult(user_message=user_stored, reply=reply_stored)
        finally:
            self.guard.release()
