"""HTTP client for the chat-history service."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from agrovision.core.config import settings
from agrovision.core.errors import NetworkError, PersistenceError, ValidationError
from agrovision.models.chat import ChatMessage, ChatType, SessionSummary

logger = logging.getLogger(__name__)

HISTORY_PATH = "/api/chat-history"


def _raise_for_write(resp: httpx.Response) -> None:
    if resp.status_code == 400:
        try:
            detail = resp.json().get("detail", "Rejected by history service")
        except ValueError:
            detail = resp.text
        raise ValidationError(detail)
    if resp.is_error:
        raise PersistenceError(f"HTTP {resp.status_code}: {resp.reason_phrase}")


class HistoryClient:
    """Talks to ``/api/chat-history`` as either a guest or a bearer-token user.

    Pass ``http`` to share a configured ``httpx.AsyncClient`` (for example one
    mounted on an ASGI app); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token
        self._http = http

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def with_token(self, token: Optional[str]) -> "HistoryClient":
        return HistoryClient(self.base_url, token=token, http=self._http)

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient() as client:
                yield client

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            return await client.request(
                method,
                f"{self.base_url}{HISTORY_PATH}",
                headers=self._headers(),
                **kwargs,
            )

    async def append(
        self,
        chat_type: ChatType | str,
        session_id: str,
        message: ChatMessage,
        context_data: Any = None,
    ) -> str:
        """Store one message and return the server-assigned id."""
        payload: dict[str, Any] = {
            "chatType": ChatType(chat_type).value,
            "sessionId": session_id,
            "role": message.role.value,
            "content": message.content,
            "contextData": context_data,
        }
        if message.timestamp is not None:
            payload["timestamp"] = message.timestamp.isoformat()

        try:
            resp = await self._request("POST", json=payload)
        except httpx.HTTPError as e:
            raise PersistenceError(f"History service unreachable: {e}") from e

        _raise_for_write(resp)
        try:
            message_id = resp.json()["messageId"]
        except (ValueError, KeyError) as e:
            raise PersistenceError(f"Unexpected history service reply: {e}") from e

        logger.debug(f"Message stored on server as {message_id}")
        return message_id

    async def list_messages(self, chat_type: ChatType | str, session_id: str) -> list[ChatMessage]:
        params = {"type": ChatType(chat_type).value, "sessionId": session_id}
        try:
            resp = await self._request("GET", params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 400:
                raise ValidationError(str(e)) from e
            raise NetworkError(f"Fetching {session_id} failed: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"Fetching {session_id} failed: {e}") from e

        return [ChatMessage.model_validate(m) for m in data.get("messages", [])]

    async def list_sessions(self) -> list[SessionSummary]:
        try:
            resp = await self._request("GET", params={"list": "true"})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"Listing sessions failed: {e}") from e

        return [SessionSummary.model_validate(s) for s in data.get("sessions", [])]

    async def delete_session(self, chat_type: ChatType | str, session_id: str) -> None:
        params = {"type": ChatType(chat_type).value, "sessionId": session_id}
        try:
            resp = await self._request("DELETE", params=params)
        except httpx.HTTPError as e:
            raise PersistenceError(f"History service unreachable: {e}") from e

        _raise_for_write(resp)
