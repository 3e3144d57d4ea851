"""Messages router.

Endpoints:
    GET  /rooms/{id}/messages       - Paginated history (oldest first)
    POST /rooms/{id}/messages       - Post a message
    PUT  /rooms/{id}/typing         - Set the caller's typing status
    GET  /rooms/{id}/typing         - Users typing in the room
    POST /messages/{id}/read        - Mark a message as read
    GET  /messages/{id}/reads       - Read receipts for a message
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from roomchat.auth.dependencies import Caller, get_current_user, get_session
from roomchat.config import get_config
from roomchat.db.session import UserSession

from .schemas import MessageCreate, TypingUpdate
from .service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MessageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


def _service(session: UserSession) -> MessageService:
    config = get_config()
    return MessageService(session, config.rooms, config.realtime)


@router.get("/rooms/{room_id}/messages")
async def get_message_history(
    room_id: str,
    before: Optional[str] = Query(None, description="ISO timestamp cursor (get messages before this time)"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Number of messages to return"),
    session: UserSession = Depends(get_session),
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the `created_at` of the oldest
    message they currently have as `before`.

    Returns:
        JSON with messages array and hasMore boolean.

    Example:
        GET /rooms/abc123/messages?limit=50
        GET /rooms/abc123/messages?before=2024-02-07T16:00:00.123000+00:00&limit=50
    """
    messages, has_more = _service(session).history(room_id, before, limit)
    return JSONResponse({"messages": messages, "hasMore": has_more})


@router.post("/rooms/{room_id}/messages", status_code=201)
async def post_message(
    room_id: str,
    body: MessageCreate,
    caller: Caller = Depends(get_current_user),
    session: UserSession = Depends(get_session),
) -> JSONResponse:
    try:
        message = _service(session).send(room_id, body.content, caller.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return JSONResponse(message, status_code=201)


@router.put("/rooms/{room_id}/typing")
async def set_typing(room_id: str, body: TypingUpdate, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).set_typing(room_id, body.is_typing))


@router.get("/rooms/{room_id}/typing")
async def get_typing(room_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).typing(room_id))


@router.post("/messages/{message_id}/read")
async def mark_read(message_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).mark_read(message_id))


@router.get("/messages/{message_id}/reads")
async def get_reads(message_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).reads(message_id))
