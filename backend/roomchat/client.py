"""Python client for the roomchat API.

Mirrors what the chat UI does: bootstrap rooms, page through messages, post
messages, manage direct conversations, and follow the realtime feed.

Rows coming back from the server are validated with pydantic. A row that
does not validate is replaced by a record with sensible defaults and a
warning is logged, so one malformed row never breaks a whole listing.

Example:
    with httpx.Client(base_url="http://localhost:8000") as http:
        client = RoomchatClient(http, token)
        rooms = client.initialize_rooms()
        client.send_message(rooms[0].id, "hello")
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, List, Optional, Type, TypeVar

import httpx
import websockets
from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class RoomchatError(Exception):
    """An API call failed; ``message`` is the server's user-facing text."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


# =============================================================================
# Records
# =============================================================================


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValueError(f"{value!r} is not a UUID") from None
    return value


class RoomRecord(BaseModel):
    id: str
    name: str
    description: Optional[str] = ""
    is_private: bool = False
    created_at: str

    @field_validator("id")
    @classmethod
    def _ids_are_uuids(cls, value: str) -> str:
        return _uuid_string(value)


class MessageRecord(BaseModel):
    id: str
    content: str
    created_at: str
    user_id: str
    user_email: str
    room_id: Optional[str] = None

    @field_validator("id", "user_id", "room_id")
    @classmethod
    def _ids_are_uuids(cls, value: Optional[str]) -> Optional[str]:
        return _uuid_string(value)

    @field_validator("user_email")
    @classmethod
    def _looks_like_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("user_email is not an email address")
        return value


class OtherUser(BaseModel):
    id: str
    username: str = "Unknown User"

    @field_validator("id")
    @classmethod
    def _ids_are_uuids(cls, value: str) -> str:
        return _uuid_string(value)


class ConversationRecord(BaseModel):
    id: str
    created_at: str
    updated_at: str
    otherUser: Optional[OtherUser] = None

    @field_validator("id")
    @classmethod
    def _ids_are_uuids(cls, value: str) -> str:
        return _uuid_string(value)


class DirectMessageRecord(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str

    @field_validator("id", "conversation_id", "sender_id")
    @classmethod
    def _ids_are_uuids(cls, value: str) -> str:
        return _uuid_string(value)


def _room_fallback(row: dict) -> RoomRecord:
    return RoomRecord.model_construct(
        id=str(row.get("id") or ""),
        name=row.get("name") or "Unnamed Room",
        description=row.get("description") or "",
        is_private=bool(row.get("is_private") or False),
        created_at=row.get("created_at") or _now_iso(),
    )


def _message_fallback(room_id: Optional[str]) -> Callable[[dict], MessageRecord]:
    def build(row: dict) -> MessageRecord:
        return MessageRecord.model_construct(
            id=str(row.get("id") or ""),
            content=row.get("content") or "",
            created_at=row.get("created_at") or _now_iso(),
            user_id=str(row.get("user_id") or ""),
            user_email=row.get("user_email") or "unknown@example.com",
            room_id=row.get("room_id") or room_id,
        )
    return build


def _conversation_fallback(row: dict) -> ConversationRecord:
    other = row.get("otherUser") or None
    return ConversationRecord.model_construct(
        id=str(row.get("id") or ""),
        created_at=row.get("created_at") or _now_iso(),
        updated_at=row.get("updated_at") or _now_iso(),
        otherUser=OtherUser.model_construct(id=str(other.get("id") or ""), username=other.get("username") or "Unknown User")
        if isinstance(other, dict) else None,
    )


def _direct_message_fallback(conversation_id: str) -> Callable[[dict], DirectMessageRecord]:
    def build(row: dict) -> DirectMessageRecord:
        return DirectMessageRecord.model_construct(
            id=str(row.get("id") or ""),
            conversation_id=str(row.get("conversation_id") or conversation_id),
            sender_id=str(row.get("sender_id") or ""),
            content=row.get("content") or "",
            created_at=row.get("created_at") or _now_iso(),
        )
    return build


def parse_rows(model: Type[T], rows: List[Any], fallback: Callable[[dict], T]) -> List[T]:
    """Validate each row, substituting ``fallback(row)`` for rows that fail."""
    parsed: List[T] = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning("[client] %s validation error: %s", model.__name__, e.errors()[0].get("msg"))
            parsed.append(fallback(row if isinstance(row, dict) else {}))
    return parsed


# =============================================================================
# Client
# =============================================================================


class RoomchatClient:
    """Synchronous API client plus an async realtime subscription.

    Args:
        http: An httpx client whose base_url points at the server.
        token: The user's access token.
        ws_url: Base URL for the realtime socket (derived from the http
            base_url when omitted).
    """

    def __init__(self, http: httpx.Client, token: str, ws_url: Optional[str] = None) -> None:
        self.http = http
        self.token = token
        self.ws_url = ws_url

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"}
        response = self.http.request(method, path, headers=headers, **kwargs)
        if response.is_error:
            raise self._error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error(response: httpx.Response) -> RoomchatError:
        try:
            body = response.json()
        except ValueError:
            body = None
        message, code = None, None
        if isinstance(body, dict):
            message = body.get("error")
            code = body.get("code")
            if message is None and body.get("detail") is not None:
                detail = body["detail"]
                message = detail if isinstance(detail, str) else json.dumps(detail)
        return RoomchatError(
            message or response.text or "An unknown error occurred. Please try again.",
            status_code=response.status_code,
            code=code,
        )

    # =========================================================================
    # Rooms & messages
    # =========================================================================

    def initialize_rooms(self) -> List[RoomRecord]:
        """Rooms visible to the user, creating the default room when there are none."""
        return parse_rows(RoomRecord, self._request("POST", "/rooms/bootstrap"), _room_fallback)

    def fetch_messages(self, room_id: str, before: Optional[str] = None, limit: int = 50) -> List[MessageRecord]:
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        data = self._request("GET", f"/rooms/{room_id}/messages", params=params)
        return parse_rows(MessageRecord, data["messages"], _message_fallback(room_id))

    def send_message(self, room_id: str, content: str) -> Optional[MessageRecord]:
        """Post a message; blank content is ignored and returns None."""
        if not content or not content.strip():
            return None
        data = self._request("POST", f"/rooms/{room_id}/messages", json={"content": content.strip()})
        return parse_rows(MessageRecord, [data], _message_fallback(room_id))[0]

    def mark_read(self, message_id: str) -> dict:
        return self._request("POST", f"/messages/{message_id}/read")

    def set_typing(self, room_id: str, is_typing: bool = True) -> dict:
        return self._request("PUT", f"/rooms/{room_id}/typing", json={"is_typing": is_typing})

    # =========================================================================
    # Direct messages
    # =========================================================================

    def list_conversations(self) -> List[ConversationRecord]:
        return parse_rows(ConversationRecord, self._request("GET", "/direct/conversations"), _conversation_fallback)

    def start_conversation(self, user_id: str) -> ConversationRecord:
        data = self._request("POST", "/direct/conversations", json={"user_id": user_id.strip()})
        return parse_rows(ConversationRecord, [data], _conversation_fallback)[0]

    def fetch_direct_messages(self, conversation_id: str) -> List[DirectMessageRecord]:
        data = self._request("GET", f"/direct/conversations/{conversation_id}/messages")
        return parse_rows(DirectMessageRecord, data, _direct_message_fallback(conversation_id))

    def send_direct_message(self, conversation_id: str, content: str) -> Optional[DirectMessageRecord]:
        """Send a direct message; blank content is ignored and returns None."""
        if not content or not content.strip():
            return None
        data = self._request(
            "POST", f"/direct/conversations/{conversation_id}/messages", json={"content": content.strip()}
        )
        return parse_rows(DirectMessageRecord, [data], _direct_message_fallback(conversation_id))[0]

    # =========================================================================
    # Realtime
    # =========================================================================

    def realtime_url(self) -> str:
        base = self.ws_url or str(self.http.base_url)
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base.rstrip('/')}/realtime?token={self.token}"

    async def subscribe(
        self,
        table: str,
        event: str = "*",
        row_filter: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> AsyncIterator[dict]:
        """Yield change payloads for ``table`` as they arrive.

        Example:
            async for change in client.subscribe("messages", "INSERT", f"room_id=eq.{room_id}"):
                print(change["new"]["content"])
        """
        channel = channel or f"public:{table}"
        async with websockets.connect(self.realtime_url()) as ws:
            frame = json.loads(await ws.recv())
            if frame.get("type") != "connected":
                raise RoomchatError(frame.get("error") or "Realtime connection was not accepted")

            request = {"type": "subscribe", "channel": channel, "table": table, "event": event}
            if row_filter:
                request["filter"] = row_filter
            await ws.send(json.dumps(request))

            async for raw in ws:
                frame = json.loads(raw)
                frame_type = frame.get("type")
                if frame_type == "error":
                    raise RoomchatError(frame.get("error") or "Subscription failed")
                if frame_type == "subscribed":
                    logger.info("[client] Subscribed to %s (%s)", table, frame.get("subscriptionId"))
                elif frame_type == "postgres_changes" and frame.get("channel") == channel:
                    yield frame["payload"]
