"""Session backend factory."""

from typing import Optional

from agrovision.client.backends.base import Delivery, SessionBackend
from agrovision.client.history_client import HistoryClient
from agrovision.client.local_cache import LocalCache
from agrovision.models.chat import ChatType

__all__ = ["Delivery", "SessionBackend", "select_backend"]


def select_backend(
    chat_type: ChatType | str,
    cache: LocalCache,
    client: Optional[HistoryClient],
    **server_options,
) -> SessionBackend:
    """Server-backed when the client carries credentials, local otherwise."""
    if client is not None and client.is_authenticated:
        from agrovision.client.backends.server import ServerBackedSession
        return ServerBackedSession(chat_type, cache, client, **server_options)

    from agrovision.client.backends.local import LocalBackedSession
    return LocalBackedSession(chat_type, cache)
