import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the event hub's connection interface."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket

    async def send_json(self, data: dict) -> None:
        await self.websocket.send_json(data)

    async def close(self, code: int = 1000) -> None:
        await self.websocket.close(code=code)


async def _authenticate(connection: WebSocketConnection, message: dict) -> None:
    app = connection.websocket.app
    hub = app.state.events
    token = message.get("sessionToken")
    if not token:
        hub.record_auth_failure(connection, "missing session token")
        await connection.send_json({"type": "auth_error", "message": "Session token required"})
        return

    user = await app.state.sessions.get_session(token)
    if user is None:
        hub.record_auth_failure(connection, "invalid session")
        await connection.send_json({"type": "auth_error", "message": "Session expired or invalid"})
        return

    hub.authenticate(connection, user)
    await connection.send_json(
        {"type": "authenticated", "user": user.model_dump(mode="json", by_alias=True)}
    )


async def _auth_status(connection: WebSocketConnection) -> None:
    user = connection.websocket.app.state.events.user_for(connection)
    reply = {"type": "auth_status", "authenticated": user is not None}
    if user is not None:
        reply["user"] = user.model_dump(mode="json", by_alias=True)
    await connection.send_json(reply)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    hub = websocket.app.state.events
    connection = WebSocketConnection(websocket)
    hub.connect(connection)
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            kind = message.get("type")
            if kind == "authenticate":
                await _authenticate(connection, message)
            elif kind == "auth_status":
                await _auth_status(connection)
            else:
                logger.debug(f"Ignoring realtime message of type {kind!r}")
    except WebSocketDisconnect:
        pass
    except ValueError as e:
        logger.warning(f"Closing connection {connection.id} after malformed message: {e}")
        await websocket.close(code=1003)
    finally:
        hub.disconnect(connection)
