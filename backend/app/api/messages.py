"""HTTP endpoint returning a conversation's stored history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from duochat.storage import MessageStore, PersistenceError

from app.config import get_settings
from app.schemas import MessageRead
from app.services.chat import get_message_store

router = APIRouter(prefix="/messages", tags=["messages"])

logger = logging.getLogger(__name__)

settings = get_settings()


@router.get("/{user_a}/{user_b}", response_model=list[MessageRead])
async def read_conversation(
    user_a: str = Path(..., min_length=1, max_length=128),
    user_b: str = Path(..., min_length=1, max_length=128),
    limit: int | None = Query(default=None, ge=1),
    store: MessageStore = Depends(get_message_store),
) -> list[MessageRead]:
    """Return the newest messages exchanged by the two users, oldest first."""

    user_a, user_b = user_a.strip(), user_b.strip()
    if not user_a or not user_b:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="User id is blank")

    effective_limit = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    try:
        stored = await store.query_conversation(user_a, user_b, limit=effective_limit)
    except PersistenceError as exc:
        logger.warning("History query failed for %s/%s: %s", user_a, user_b, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Message store unavailable") from exc

    return [MessageRead.from_stored(item) for item in stored]
