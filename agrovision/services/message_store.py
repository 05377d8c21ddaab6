"""Relational message store backing the chat-history service."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from agrovision.core.database import ensure_schema
from agrovision.core.errors import PersistenceError
from agrovision.models.chat import (
    ChatMessage,
    ChatMessageRecord,
    SessionSummary,
    as_utc,
    new_message_id,
    session_title,
    utc_now,
)

logger = logging.getLogger(__name__)


class MessageStore:
    def __init__(self, session: Session):
        self.session = session

    def _ensure_schema(self) -> None:
        try:
            ensure_schema(self.session.get_bind())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Message store unavailable: {e}") from e

    def append(
        self,
        user_id: str,
        chat_type: str,
        session_id: str,
        role: str,
        content: str,
        context_data: Any = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        self._ensure_schema()
        record = ChatMessageRecord(
            id=new_message_id(),
            user_id=user_id,
            chat_type=chat_type,
            session_id=session_id,
            role=role,
            content=content,
            context_data=context_data,
            created_at=as_utc(created_at) if created_at else utc_now(),
        )
        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to save message: {e}") from e

        logger.debug(f"Saved message {record.id} for {user_id} in {chat_type}/{session_id}")
        return record.id

    def list_sessions(self, user_id: str) -> list[SessionSummary]:
        self._ensure_schema()
        last_updated = func.max(ChatMessageRecord.created_at).label("last_updated")
        message_count = func.count(ChatMessageRecord.id).label("message_count")
        try:
            rows = self.session.exec(
                select(ChatMessageRecord.session_id, ChatMessageRecord.chat_type, last_updated, message_count)
                .where(ChatMessageRecord.user_id == user_id)
                .group_by(ChatMessageRecord.session_id, ChatMessageRecord.chat_type)
                .order_by(last_updated.desc())
            ).all()

            summaries = []
            for session_id, chat_type, updated, count in rows:
                first = self.session.exec(
                    select(ChatMessageRecord.content)
                    .where(
                        ChatMessageRecord.user_id == user_id,
                        ChatMessageRecord.chat_type == chat_type,
                        ChatMessageRecord.session_id == session_id,
                    )
                    .order_by(ChatMessageRecord.created_at, ChatMessageRecord.seq)  # type: ignore
                    .limit(1)
                ).first()
                summaries.append(
                    SessionSummary(
                        session_id=session_id,
                        chat_type=chat_type,
                        last_updated=as_utc(updated),
                        message_count=count,
                        title=session_title(first, chat_type),
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list sessions: {e}") from e

        return summaries

    def list_messages(self, user_id: str, chat_type: str, session_id: str) -> list[ChatMessage]:
        self._ensure_schema()
        try:
            records = self.session.exec(
                select(ChatMessageRecord)
                .where(
                    ChatMessageRecord.user_id == user_id,
                    ChatMessageRecord.chat_type == chat_type,
                    ChatMessageRecord.session_id == session_id,
                )
                .order_by(ChatMessageRecord.created_at, ChatMessageRecord.seq)  # type: ignore
            ).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to fetch messages: {e}") from e

        return [
            ChatMessage(
                id=r.id,
                role=r.role,
                content=r.content,
                timestamp=as_utc(r.created_at),
                context_data=r.context_data,
            )
            for r in records
        ]

    def delete_session(self, user_id: str, chat_type: str, session_id: str) -> int:
        """Remove every message of a session. Unknown sessions delete nothing."""
        self._ensure_schema()
        try:
            records = self.session.exec(
                select(ChatMessageRecord).where(
                    ChatMessageRecord.user_id == user_id,
                    ChatMessageRecord.chat_type == chat_type,
                    ChatMessageRecord.session_id == session_id,
                )
            ).all()
            for record in records:
                self.session.delete(record)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to delete messages: {e}") from e

        logger.debug(f"Deleted {len(records)} messages from {chat_type}/{session_id} for {user_id}")
        return len(records)
