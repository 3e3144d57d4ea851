"""Auth router.

Endpoints:
    GET /auth/me - The caller's identity and profile
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from roomchat.db.session import UserSession

from .dependencies import Caller, get_current_user, get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
async def me(
    caller: Caller = Depends(get_current_user),
    session: UserSession = Depends(get_session),
) -> JSONResponse:
    profile = session.maybe_one("profiles", {"id": caller.id})
    return JSONResponse({"id": caller.id, "email": caller.email, "profile": profile})
