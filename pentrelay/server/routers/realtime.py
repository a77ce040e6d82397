from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from pentrelay.base.config import get_config
from pentrelay.server.routers.auth import auth_required, is_origin_allowed, websocket_token
from pentrelay.server.state import get_state
from pentrelay.server.transport import TransportSession

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)

# Handshake rejection close code
CLOSE_UNAUTHORIZED = 4403


async def validate_websocket_connection(
    websocket: WebSocket,
    endpoint_name: str,
) -> bool:
    """
    Validate WebSocket connection security.
    """
    config = get_config()

    logger.info(f"[WebSocket] {endpoint_name} - Connection attempt from {websocket.client}")

    # Origin Check
    origin = websocket.headers.get("origin")
    if origin and not is_origin_allowed(origin, config.security.allowed_origins):
        logger.warning(f"[WebSocket] {endpoint_name} denied origin: {origin}")
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return False

    # Auth Check
    if auth_required():
        token = websocket_token(websocket)
        if not token:
            logger.warning(f"[WebSocket] {endpoint_name} denied: missing token")
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
            return False

        if token != config.security.api_token:
            logger.warning(f"[WebSocket] {endpoint_name} denied: invalid token")
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
            return False

        logger.info(f"[WebSocket] {endpoint_name} - Authentication successful")

    return True


def _session_for(websocket: WebSocket) -> TransportSession:
    async def close(code: int, reason: str) -> None:
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=code, reason=reason)

    peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    return TransportSession(sender=websocket.send_text, closer=close, peer=peer)


async def relay_session(websocket: WebSocket, endpoint_name: str) -> None:
    """Run one browser connection: accept, pump inbound frames, tear down."""
    if not await validate_websocket_connection(websocket, endpoint_name):
        return

    await websocket.accept()

    gateway = get_state().gateway
    session = await gateway.accept(_session_for(websocket))

    try:
        while not session.closing:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await gateway.handle_message(session, raw)
    except WebSocketDisconnect:
        logger.info(f"[WebSocket] Session {session.id} disconnected")
    except RuntimeError as e:
        # Starlette raises this when receiving after the socket was closed server-side
        logger.debug(f"[WebSocket] Session {session.id} receive loop ended: {e}")
    finally:
        await gateway.terminate(session, reason="client disconnected")


@router.websocket("/")
async def relay_root_endpoint(websocket: WebSocket):
    """Relay websocket served at the root path, as dashboards connect to ws://host:port."""
    await relay_session(websocket, "/")


@router.websocket("/ws")
async def relay_ws_endpoint(websocket: WebSocket):
    await relay_session(websocket, "/ws")
