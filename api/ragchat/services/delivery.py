"""
Delivery of events to live WebSocket connections.

``WebSocketDeliveryChannel`` pushes one event to one connection and tells a
vanished client (``ConnectionGoneError``) apart from any other failure
(``DeliveryError``). ``SendChain`` serialises the sends of one work item so
chunks reach the client in the order the model produced them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ragchat.core.errors import ConnectionGoneError, DeliveryError
from ragchat.models.chat import DeliveryEvent

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    user_id: str
    socket: WebSocket


class ConnectionRegistry:
    """
    Live ``connection_id -> (user, socket)`` mapping.

    Written only on connect/disconnect; read by the input path and the
    delivery channel.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def register(self, connection_id: str, user_id: str, socket: WebSocket) -> None:
        self._connections[connection_id] = Connection(user_id=user_id, socket=socket)

    def remove(self, connection_id: str) -> bool:
        return self._connections.pop(connection_id, None) is not None

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)


class DeliveryChannel(ABC):
    """Pushes delivery events to a specific live connection."""

    @abstractmethod
    async def send(self, connection_id: str, event: DeliveryEvent) -> None:
        """
        Raises:
            ConnectionGoneError: The connection no longer exists.
            DeliveryError: Any other delivery failure.
        """


class WebSocketDeliveryChannel(DeliveryChannel):
    """Delivers events to sockets held in this process's registry."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def send(self, connection_id: str, event: DeliveryEvent) -> None:
        connection = self._registry.get(connection_id)
        if connection is None or not _is_open(connection.socket):
            raise ConnectionGoneError(connection_id)

        try:
            await connection.socket.send_json(event.to_wire())
        except WebSocketDisconnect as exc:
            raise ConnectionGoneError(connection_id) from exc
        except (RuntimeError, OSError) as exc:
            if not _is_open(connection.socket):
                raise ConnectionGoneError(connection_id) from exc
            raise DeliveryError(f"Failed to send {event.type} to {connection_id}: {exc}") from exc


def _is_open(socket: WebSocket) -> bool:
    return (
        socket.client_state == WebSocketState.CONNECTED
        and socket.application_state == WebSocketState.CONNECTED
    )


class SendChain:
    """
    Strictly sequential send pipeline for one work item.

    ``push`` returns immediately; each scheduled send starts only after the
    previous one has completed. Once a send fails, every later send in the
    chain is skipped with the same error, the next ``push`` raises it and
    ``drain`` raises it.
    """

    def __init__(self, channel: DeliveryChannel, connection_id: str) -> None:
        self._channel = channel
        self._connection_id = connection_id
        self._tail: asyncio.Task | None = None
        self._pending: list[asyncio.Task] = []

    def push(self, event: DeliveryEvent) -> None:
        self._raise_if_failed()
        self._tail = asyncio.create_task(self._send_after(self._tail, event))
        self._pending.append(self._tail)

    async def drain(self) -> None:
        """Wait until every pushed event has been sent."""
        if self._tail is not None:
            await self._tail
        self._pending.clear()

    async def abort(self) -> None:
        """Cancel sends that have not completed yet."""
        for task in self._pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()

    async def _send_after(self, previous: asyncio.Task | None, event: DeliveryEvent) -> None:
        if previous is not None:
            await previous
        await self._channel.send(self._connection_id, event)

    def _raise_if_failed(self) -> None:
        tail = self._tail
        if tail is None or not tail.done() or tail.cancelled():
            return
        error = tail.exception()
        if error is not None:
            raise error
