"""Profiles router.

Endpoints:
    GET   /profiles?ids=a,b  - Profiles by id
    GET   /profiles/{id}     - One profile
    PATCH /profiles/me       - Update the caller's username / avatar
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from roomchat.auth.dependencies import get_session
from roomchat.db.session import UserSession

from .schemas import ProfileUpdate
from .service import ProfileService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("")
async def list_profiles(
    ids: Optional[str] = Query(None, description="Comma-separated user ids"),
    session: UserSession = Depends(get_session),
) -> JSONResponse:
    user_ids = [part.strip() for part in (ids or "").split(",") if part.strip()]
    return JSONResponse(ProfileService(session).list(user_ids))


@router.patch("/me")
async def update_my_profile(body: ProfileUpdate, session: UserSession = Depends(get_session)) -> JSONResponse:
    """Update the caller's profile.

    Returns:
        The updated profile; 409 if the username is taken.
    """
    profile = ProfileService(session).update_own(username=body.username, avatar_url=body.avatar_url)
    if profile is None:
        return JSONResponse({"error": "User not found"}, status_code=404)
    return JSONResponse(profile)


@router.get("/{user_id}")
async def get_profile(user_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    profile = ProfileService(session).get(user_id)
    if profile is None:
        return JSONResponse({"error": "User not found"}, status_code=404)
    return JSONResponse(profile)
