"""
Chat router — WebSocket /ws endpoint.

Authenticates the connection from the ``token`` query parameter, registers
it with the session router, and queues every question it receives. Answers
are pushed back on the same socket by the queue workers.
"""

import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ragchat.core.errors import AuthenticationError, InvalidMessageError, UnknownConnectionError
from ragchat.models.chat import ErrorCode, ErrorEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    """
    Chat connection.

    1. Verifies the bearer token; any failure closes with 1008.
    2. Records connection -> user.
    3. Queues each question; the reply arrives as ack / chunk / references / eos.
    """
    state = websocket.app.state
    try:
        user_id = await state.token_verifier.verify(websocket.query_params.get("token"))
    except AuthenticationError as exc:
        logger.warning("Rejected WebSocket connection: %s", exc)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    session = state.session_router
    session.connect(connection_id, user_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await session.handle_input(connection_id, raw)
            except InvalidMessageError as exc:
                logger.warning("Invalid message on %s: %s", connection_id, exc)
                await websocket.send_json(ErrorEvent(code=ErrorCode.INVALID_REQUEST).to_wire())
    except WebSocketDisconnect:
        pass
    except UnknownConnectionError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    finally:
        session.disconnect(connection_id)
