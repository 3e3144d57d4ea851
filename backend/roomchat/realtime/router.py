"""Realtime WebSocket endpoint.

Protocol Message Types (client -> server):
    - subscribe: {type, channel, table, event?, filter?}
    - unsubscribe: {type, channel}
    - ping: keep-alive

Server -> client:
    - connected: sent once after authentication
    - subscribed / unsubscribed: acknowledgements
    - postgres_changes: a row change the caller may see
    - pong
    - error: the last frame was rejected
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from roomchat.auth.dependencies import authenticate
from roomchat.config import get_config
from roomchat.errors import DatabaseError

from .hub import get_hub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/realtime")
async def realtime_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token"),
) -> None:
    """Stream row changes to an authenticated client.

    Protocol Flow:
        1. Client connects with ?token=<jwt>
           → Server sends: {type: "connected", userId}
        2. Client sends: {type: "subscribe", channel, table, event, filter}
           → Server sends: {type: "subscribed", channel, subscriptionId}
        3. Rows change
           → Server sends: {type: "postgres_changes", channel, payload}
        4. Client sends: {type: "unsubscribe", channel}
           → Server sends: {type: "unsubscribed", channel}
    """
    try:
        caller = authenticate(token)
    except DatabaseError as e:
        logger.warning("[Realtime] Rejected connection: %s", e.message)
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    hub = get_hub()
    hub.max_subscriptions = get_config().realtime.max_subscriptions_per_connection
    await websocket.accept()
    hub.connect(websocket, caller.id)

    try:
        await websocket.send_json({"type": "connected", "userId": caller.id})
        # first sight of a user creates their profile
        await hub.flush()

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "error": "Expected a JSON object"})
                continue

            message_type = data.get("type")

            if message_type == "subscribe":
                channel = data.get("channel")
                try:
                    subscription = hub.subscribe(
                        websocket,
                        channel=channel,
                        table=data.get("table"),
                        event=data.get("event", "*"),
                        row_filter=data.get("filter"),
                    )
                except ValueError as e:
                    await websocket.send_json({"type": "error", "channel": channel, "error": str(e)})
                    continue
                await websocket.send_json({
                    "type": "subscribed",
                    "channel": subscription.channel,
                    "subscriptionId": subscription.id,
                })

            elif message_type == "unsubscribe":
                channel = data.get("channel")
                try:
                    removed = hub.unsubscribe(websocket, channel)
                except ValueError as e:
                    await websocket.send_json({"type": "error", "channel": channel, "error": str(e)})
                    continue
                if removed:
                    await websocket.send_json({"type": "unsubscribed", "channel": channel})
                else:
                    await websocket.send_json({
                        "type": "error",
                        "channel": channel,
                        "error": f"Not subscribed to {channel!r}",
                    })

            elif message_type == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({
                    "type": "error",
                    "error": f"Unknown message type: {message_type!r}",
                })

    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
