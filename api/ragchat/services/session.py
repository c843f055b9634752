"""
Session Router.

Tracks which authenticated user owns each live connection and hands every
inbound question to the work queue as a ``WorkItem``.
"""

import logging

from fastapi import WebSocket
from pydantic import ValidationError

from ragchat.core.errors import InvalidMessageError, UnknownConnectionError
from ragchat.models.chat import UserMessage, WorkItem
from ragchat.services.delivery import ConnectionRegistry
from ragchat.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class SessionRouter:
    """Maps connections to users and enqueues their questions."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: WorkQueue,
        instance_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._queue = queue
        self._instance_id = instance_id

    def connect(self, connection_id: str, user_id: str, socket: WebSocket) -> None:
        """Record a connection. ``user_id`` must already be verified."""
        self._registry.register(connection_id, user_id, socket)
        logger.info("Connection %s opened for user %s", connection_id, user_id)

    def disconnect(self, connection_id: str) -> None:
        """Forget a connection. Unknown connections are ignored."""
        if self._registry.remove(connection_id):
            logger.info("Connection %s closed", connection_id)

    async def handle_input(self, connection_id: str, raw: str) -> WorkItem:
        """
        Turn one inbound client message into a queued work item.

        Raises:
            UnknownConnectionError: No user is registered for the connection.
            InvalidMessageError: The payload is not a valid question message.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            logger.error("Input received for unknown connection %s", connection_id)
            raise UnknownConnectionError(connection_id)

        try:
            message = UserMessage.model_validate_json(raw)
        except ValidationError as exc:
            raise InvalidMessageError(str(exc)) from exc

        item = WorkItem(
            connection_id=connection_id,
            thread_id=message.thread_id,
            question=message.input,
            user_id=connection.user_id,
            instance_id=self._instance_id,
        )
        await self._queue.enqueue(item)
        logger.info(
            "Queued question from user %s (thread %s)",
            item.user_id,
            item.thread_id or "new",
        )
        return item
