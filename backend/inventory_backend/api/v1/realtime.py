"""Real-time notification channel over WebSocket"""

import json
import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from prometheus_client import Gauge
from sqlalchemy.orm import Session

from inventory_backend.core.exceptions import AuthenticationError
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.events import RequestContext

logger = logging.getLogger(__name__)
router = APIRouter()

WS_CONNECTIONS_GAUGE = Gauge("inventory_ws_connections", "Live notification WebSocket connections")


@contextmanager
def _db(runtime: Runtime) -> Iterator[Session]:
    db = runtime.session_factory()
    try:
        yield db
    finally:
        db.close()


def _handshake_token(websocket: WebSocket, runtime: Runtime) -> Optional[str]:
    """``?token=`` query parameter, then bearer header, then access cookie."""
    token = websocket.query_params.get("token")
    if token:
        return token
    return runtime.tokens.extract(websocket)


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    """
    Authenticated notification stream

    Client frames: ``{"event": "get:notifications"}``,
    ``{"event": "mark:seen", "id": ...}``, ``{"event": "mark:read", "id": ...}``.
    Server frames: ``notifications`` (list) and ``new:notification`` (single item).
    """
    runtime: Runtime = websocket.app.state.runtime
    context = RequestContext(
        ip_address=websocket.client.host if websocket.client else None,
        user_agent=websocket.headers.get("user-agent"),
    )

    try:
        with _db(runtime) as db:
            identity = runtime.gateway.authenticate_connection(db, _handshake_token(websocket, runtime), context)
            user_id = identity.user.id
    except AuthenticationError as exc:
        logger.info("WebSocket handshake rejected: %s", exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    runtime.registry.add(user_id, connection_id, websocket)
    WS_CONNECTIONS_GAUGE.inc()
    logger.info("User connected: %s (%s)", user_id, connection_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "Malformed event"}})
                continue

            with _db(runtime) as db:
                reply = runtime.gateway.handle_event(db, user_id, message)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        runtime.registry.remove(user_id, connection_id)
        WS_CONNECTIONS_GAUGE.dec()
        logger.info("User disconnected: %s (%s)", user_id, connection_id)
