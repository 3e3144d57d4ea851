"""Direct messaging router.

Endpoints:
    GET  /direct/conversations                  - The caller's conversations
    POST /direct/conversations                  - Find or create a conversation
    GET  /direct/conversations/{id}/messages    - Messages, oldest first
    POST /direct/conversations/{id}/messages    - Send a message
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from roomchat.auth.dependencies import get_session
from roomchat.config import get_config
from roomchat.db.session import UserSession

from .schemas import ConversationStart, DirectMessageCreate
from .service import ConversationError, DirectService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/direct", tags=["direct"])


def _service(session: UserSession) -> DirectService:
    return DirectService(session, get_config().rooms)


@router.get("/conversations")
async def list_conversations(session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).list_conversations())


@router.post("/conversations")
async def start_conversation(body: ConversationStart, session: UserSession = Depends(get_session)) -> JSONResponse:
    """Find or create the conversation between the caller and `user_id`.

    Returns:
        The conversation with `otherUser`; 400 for a malformed or own id,
        404 when no such user exists.
    """
    try:
        conversation = _service(session).start_conversation(body.user_id)
    except ConversationError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    return JSONResponse(conversation)


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).messages(conversation_id))


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: DirectMessageCreate,
    session: UserSession = Depends(get_session),
) -> JSONResponse:
    try:
        message = _service(session).send(conversation_id, body.content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return JSONResponse(message, status_code=201)
