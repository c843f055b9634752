"""
Decoupling queue between the session router and the work dispatcher.

Azure Storage Queues give at-least-once delivery, one message per receive,
and hide a received message for ``visibility_timeout`` seconds. A message
that is not deleted before that window closes is redelivered.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from azure.storage.queue.aio import QueueClient

from ragchat.models.chat import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class ReceivedMessage:
    body: str
    dequeue_count: int = 1
    handle: Any = None


class WorkQueue(ABC):
    """Queue contract used by the session router and the queue worker."""

    @abstractmethod
    async def enqueue(self, item: WorkItem) -> None: ...

    @abstractmethod
    async def receive(self) -> ReceivedMessage | None:
        """Receive at most one message, or None when the queue is empty."""

    @abstractmethod
    async def delete(self, message: ReceivedMessage) -> None: ...


class AzureStorageWorkQueue(WorkQueue):
    """Work queue backed by an Azure Storage queue."""

    def __init__(self, client: QueueClient, visibility_timeout: int) -> None:
        self._client = client
        self._visibility_timeout = visibility_timeout

    async def enqueue(self, item: WorkItem) -> None:
        await self._client.send_message(item.model_dump_json(by_alias=True, exclude_none=True))
        logger.debug("Enqueued work item for connection %s", item.connection_id)

    async def receive(self) -> ReceivedMessage | None:
        message = await self._client.receive_message(visibility_timeout=self._visibility_timeout)
        if message is None:
            return None
        return ReceivedMessage(
            body=message.content,
            dequeue_count=message.dequeue_count or 1,
            handle=message,
        )

    async def delete(self, message: ReceivedMessage) -> None:
        await self._client.delete_message(message.handle)


class InMemoryWorkQueue(WorkQueue):
    """Process-local queue for development without a storage account.

    Messages are removed on receive, so there is no redelivery.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def enqueue(self, item: WorkItem) -> None:
        await self._queue.put(item.model_dump_json(by_alias=True, exclude_none=True))

    async def receive(self) -> ReceivedMessage | None:
        try:
            body = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return ReceivedMessage(body=body)

    async def delete(self, message: ReceivedMessage) -> None:
        return None

    def __len__(self) -> int:
        return self._queue.qsize()
