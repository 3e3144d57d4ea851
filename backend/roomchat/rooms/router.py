"""Rooms router.

Endpoints:
    GET    /rooms                    - Rooms visible to the caller
    POST   /rooms                    - Create a room (creator joins it)
    POST   /rooms/bootstrap          - Visible rooms, creating the default room if none
    PATCH  /rooms/{id}               - Update a room the caller created
    POST   /rooms/{id}/join          - Join a room
    DELETE /rooms/{id}/members/me    - Leave a room
    GET    /rooms/{id}/members       - Memberships visible to the caller
"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from roomchat.auth.dependencies import get_session
from roomchat.config import get_config
from roomchat.db.session import UserSession

from .schemas import RoomCreate, RoomUpdate
from .service import RoomService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])


def _service(session: UserSession) -> RoomService:
    return RoomService(session, get_config().rooms)


@router.get("")
async def list_rooms(session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).list_rooms())


@router.post("", status_code=201)
async def create_room(body: RoomCreate, session: UserSession = Depends(get_session)) -> JSONResponse:
    """Create a room.

    Returns:
        The created room (201 Created).
    """
    room = _service(session).create_room(body.name, body.description, body.is_private)
    return JSONResponse(room, status_code=201)


@router.post("/bootstrap")
async def bootstrap_rooms(session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).bootstrap())


@router.patch("/{room_id}")
async def update_room(room_id: str, body: RoomUpdate, session: UserSession = Depends(get_session)) -> JSONResponse:
    """Update a room's fields.

    Returns:
        The updated room, or 404 if the caller cannot update it.
    """
    room = _service(session).update_room(
        room_id,
        name=body.name,
        description=body.description,
        is_private=body.is_private,
    )
    if room is None:
        return JSONResponse({"error": "Room not found"}, status_code=404)
    logger.info("[rooms] Updated room %s", room_id)
    return JSONResponse(room)


@router.post("/{room_id}/join")
async def join_room(room_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).join(room_id))


@router.delete("/{room_id}/members/me", status_code=204)
async def leave_room(room_id: str, session: UserSession = Depends(get_session)) -> Response:
    if not _service(session).leave(room_id):
        return JSONResponse({"error": "Not a member of this room"}, status_code=404)
    return Response(status_code=204)


@router.get("/{room_id}/members")
async def list_members(room_id: str, session: UserSession = Depends(get_session)) -> JSONResponse:
    return JSONResponse(_service(session).members(room_id))
