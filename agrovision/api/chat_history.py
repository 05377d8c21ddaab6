"""REST API for chat history: list sessions, read, append and delete messages."""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from agrovision.core.auth import resolve_user_id
from agrovision.core.database import get_session
from agrovision.core.errors import PersistenceError, ValidationError
from agrovision.models.chat import CamelModel, ChatType, Role
from agrovision.services.message_store import MessageStore

router = APIRouter()
logger = logging.getLogger(__name__)


class HistoryEntryCreate(CamelModel):
    # Everything is loosely typed here so that bad or missing fields produce a 400, not a 422.
    chat_type: Optional[Any] = None
    session_id: Optional[Any] = None
    role: Optional[Any] = None
    content: Optional[Any] = None
    context_data: Optional[Any] = None
    timestamp: Optional[Any] = None


_timestamp_adapter = TypeAdapter(datetime)


def _require_chat_type(value: Optional[str]) -> str:
    if not value:
        raise ValidationError("Missing required parameters")
    try:
        return ChatType(value).value
    except ValueError:
        raise ValidationError(f"Unknown chat type '{value}'")


def _validate_entry(entry: HistoryEntryCreate) -> Optional[datetime]:
    """Check the required fields and return the parsed client timestamp, if any."""
    fields = (
        ("chatType", entry.chat_type),
        ("sessionId", entry.session_id),
        ("role", entry.role),
        ("content", entry.content),
    )
    wrong_type = [name for name, value in fields if value is not None and not isinstance(value, str)]
    if wrong_type:
        raise ValidationError(f"Fields must be strings: {', '.join(wrong_type)}")
    missing = [name for name, value in fields if not value or not value.strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    _require_chat_type(entry.chat_type)
    if entry.role not in (Role.USER.value, Role.ASSISTANT.value):
        raise ValidationError(f"Unknown role '{entry.role}'")

    if entry.timestamp is None:
        return None
    try:
        return _timestamp_adapter.validate_python(entry.timestamp)
    except PydanticValidationError:
        raise ValidationError(f"Invalid timestamp '{entry.timestamp}'")


@router.get("")
async def get_history(
    list_sessions: Optional[str] = Query(default=None, alias="list"),
    chat_type: Optional[str] = Query(default=None, alias="type"),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = Depends(resolve_user_id),
    session: Session = Depends(get_session),
):
    store = MessageStore(session)

    if list_sessions == "true":
        try:
            sessions = store.list_sessions(user_id)
        except PersistenceError as e:
            logger.error(f"Listing sessions for {user_id} failed: {e}")
            return {"sessions": []}
        logger.debug(f"Listed {len(sessions)} sessions for {user_id}")
        return {"sessions": [s.model_dump(by_alias=True, mode="json") for s in sessions]}

    try:
        chat_type = _require_chat_type(chat_type)
        if not session_id:
            raise ValidationError("Missing required parameters")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        messages = store.list_messages(user_id, chat_type, session_id)
    except PersistenceError as e:
        logger.error(f"Fetching {chat_type}/{session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch messages")

    return {
        "sessionId": session_id,
        "chatType": chat_type,
        "messages": [m.model_dump(by_alias=True, mode="json") for m in messages],
        "total": len(messages),
    }


@router.post("")
async def append_message(
    entry: HistoryEntryCreate,
    user_id: str = Depends(resolve_user_id),
    session: Session = Depends(get_session),
):
    try:
        created_at = _validate_entry(entry)
    except ValidationError as e:
        logger.debug(f"Rejected history entry from {user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        message_id = MessageStore(session).append(
            user_id,
            entry.chat_type,  # type: ignore[arg-type]
            entry.session_id,  # type: ignore[arg-type]
            entry.role,  # type: ignore[arg-type]
            entry.content,  # type: ignore[arg-type]
            context_data=entry.context_data,
            created_at=created_at,
        )
    except PersistenceError as e:
        logger.error(f"Saving message for {user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to save message")

    return {"success": True, "messageId": message_id}


@router.delete("")
async def delete_history(
    chat_type: Optional[str] = Query(default=None, alias="type"),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = Depends(resolve_user_id),
    session: Session = Depends(get_session),
):
    try:
        chat_type = _require_chat_type(chat_type)
        if not session_id:
            raise ValidationError("Missing required parameters")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        MessageStore(session).delete_session(user_id, chat_type, session_id)
    except PersistenceError as e:
        logger.error(f"Deleting {chat_type}/{session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete messages")

    return {"success": True}
