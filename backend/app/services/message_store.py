"""SQLAlchemy implementation of the message persistence gateway."""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from duochat.messages import ensure_aware
from duochat.storage import MessageDraft, PersistenceError, StoredMessage

from app.models import ChatMessage


logger = logging.getLogger(__name__)


def _to_stored(row: ChatMessage) -> StoredMessage:
    return StoredMessage(
        id=str(row.id),
        sender_id=row.sender_id,
        recipient_id=row.recipient_id,
        text=row.content,
        timestamp=ensure_aware(row.sent_at),
        client_message_id=row.client_message_id,
    )


class SqlMessageStore:
    """Store messages through short-lived SQLAlchemy sessions.

    Sessions are blocking, so each call runs in Starlette's threadpool and
    the event loop keeps serving other connections meanwhile.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def save(self, draft: MessageDraft) -> StoredMessage:
        return await run_in_threadpool(self._save, draft)

    async def query_conversation(
        self,
        user_a: str,
        user_b: str,
        *,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> Sequence[StoredMessage]:
        return await run_in_threadpool(self._query, user_a, user_b, limit, newest_first)

    def _save(self, draft: MessageDraft) -> StoredMessage:
        row = ChatMessage(
            sender_id=draft.sender_id,
            recipient_id=draft.recipient_id,
            content=draft.text,
            client_message_id=draft.client_message_id,
            sent_at=ensure_aware(draft.timestamp),
        )
        with self._session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("Failed to store chat message", exc_info=True)
                raise PersistenceError("Failed to store message") from exc
            db.refresh(row)
            return _to_stored(row)

    def _query(
        self, user_a: str, user_b: str, limit: int | None, newest_first: bool
    ) -> list[StoredMessage]:
        pair = or_(
            and_(ChatMessage.sender_id == user_a, ChatMessage.recipient_id == user_b),
            and_(ChatMessage.sender_id == user_b, ChatMessage.recipient_id == user_a),
        )
        stmt = select(ChatMessage).where(pair).order_by(
            ChatMessage.sent_at.desc(), ChatMessage.id.desc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self._session_factory() as db:
                rows = list(db.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load conversation") from exc
        messages = [_to_stored(row) for row in rows]
        if not newest_first:
            messages.reverse()
        return messages
