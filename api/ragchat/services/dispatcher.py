"""
Work Dispatcher — Core query pipeline.

Processes exactly one WorkItem end to end:
1. Resolve the thread (or create one for a new conversation).
2. Acknowledge with the thread id, or report THREAD_NOT_FOUND and stop.
3. Retrieve passages for the question.
4. Stream the generated answer chunk by chunk.
5. Send the aggregated references, then end-of-stream.
6. Persist the new turn.

Failures after the acknowledgement get one best-effort
INTERNAL_SERVER_ERROR event, except when the client is gone. Nothing is
persisted unless every step before persistence succeeded.
"""

import asyncio
import logging
from enum import Enum

from pydantic import ValidationError

from ragchat.core.errors import ConnectionGoneError, DuplicateThreadError, ThreadNotFoundError
from ragchat.core.telemetry import get_tracer
from ragchat.models.chat import (
    AckEvent,
    EosEvent,
    ErrorCode,
    ErrorEvent,
    ReferencesEvent,
    WorkItem,
)
from ragchat.models.threads import Thread
from ragchat.services.delivery import DeliveryChannel
from ragchat.services.rag import SYSTEM_PROMPT, GenerationOrchestrator
from ragchat.services.references import aggregate_references
from ragchat.services.search import PassageSearchService
from ragchat.services.thread_store import ThreadStore
from ragchat.services.work_queue import ReceivedMessage, WorkQueue

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    START = "start"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    THREAD_NOT_FOUND = "thread_not_found"
    CLIENT_GONE = "client_gone"
    FAILED = "failed"


class _PipelineRun:
    def __init__(self, item: WorkItem) -> None:
        self.item = item
        self.state = PipelineState.START

    def transition(self, state: PipelineState) -> None:
        logger.debug(
            "Connection %s: %s -> %s", self.item.connection_id, self.state.value, state.value
        )
        self.state = state


class WorkDispatcher:
    """Drives the retrieval + generation pipeline for one work item."""

    def __init__(
        self,
        thread_store: ThreadStore,
        search_service: PassageSearchService,
        orchestrator: GenerationOrchestrator,
        channel: DeliveryChannel,
        memory_turns: int = 10,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._threads = thread_store
        self._search = search_service
        self._orchestrator = orchestrator
        self._channel = channel
        self._memory_turns = memory_turns
        self._timeout = timeout_seconds
        self._tracer = get_tracer()

    async def dispatch(self, item: WorkItem) -> DispatchOutcome:
        """
        Run the full pipeline for ``item`` within the timeout budget.

        Never raises for pipeline failures; the outcome says what happened.
        """
        run = _PipelineRun(item)
        with self._tracer.start_as_current_span("dispatcher.dispatch") as span:
            span.set_attribute("dispatcher.user_id", item.user_id)
            outcome = await self._dispatch(run)
            span.set_attribute("dispatcher.outcome", outcome.value)
            span.set_attribute("dispatcher.state", run.state.value)
            return outcome

    async def _dispatch(self, run: _PipelineRun) -> DispatchOutcome:
        connection_id = run.item.connection_id
        try:
            return await asyncio.wait_for(self._run(run), timeout=self._timeout)
        except ConnectionGoneError:
            logger.info("Client gone for connection %s.", connection_id)
            run.transition(PipelineState.FAILED)
            return DispatchOutcome.CLIENT_GONE
        except DuplicateThreadError as exc:
            logger.error("Data integrity fault: %s", exc)
        except asyncio.TimeoutError:
            logger.error(
                "Pipeline for connection %s exceeded %.0fs in state %s",
                connection_id,
                self._timeout,
                run.state.value,
            )
        except Exception:
            logger.exception("Pipeline failed for connection %s", connection_id)

        run.transition(PipelineState.FAILED)
        await self._notify_failure(connection_id)
        return DispatchOutcome.FAILED

    async def _run(self, run: _PipelineRun) -> DispatchOutcome:
        item = run.item

        try:
            thread = await self._get_or_create_thread(item)
        except ThreadNotFoundError:
            logger.warning("Thread %s not found for user %s", item.thread_id, item.user_id)
            await self._channel.send(
                item.connection_id, ErrorEvent(code=ErrorCode.THREAD_NOT_FOUND)
            )
            run.transition(PipelineState.FAILED)
            return DispatchOutcome.THREAD_NOT_FOUND

        await self._channel.send(
            item.connection_id, AckEvent(thread_id=thread.metadata.thread_id)
        )

        run.transition(PipelineState.RETRIEVING)
        results = await self._search.search(item.question)
        logger.info("Retrieved %d reference texts.", len(results))

        run.transition(PipelineState.GENERATING)
        generation = await self._orchestrator.generate(
            item.question, results, thread, item.connection_id
        )

        # References go out after the answer to keep first-token latency low
        run.transition(PipelineState.FINALIZING)
        await self._channel.send(
            item.connection_id, ReferencesEvent(references=aggregate_references(results))
        )
        await self._channel.send(item.connection_id, EosEvent())

        await self._threads.append_turn(
            item.user_id,
            thread.metadata,
            item.question,
            generation.answer,
            results,
            system_template=SYSTEM_PROMPT,
        )

        run.transition(PipelineState.DONE)
        return DispatchOutcome.COMPLETED

    async def _get_or_create_thread(self, item: WorkItem) -> Thread:
        if item.thread_id is None:
            metadata = await self._threads.create_thread(item.user_id, item.question)
            return Thread(metadata=metadata, turns=[])

        # Verifies the thread exists and belongs to the user
        return await self._threads.get_thread(
            item.user_id, item.thread_id, limit=self._memory_turns
        )

    async def _notify_failure(self, connection_id: str) -> None:
        try:
            await self._channel.send(
                connection_id, ErrorEvent(code=ErrorCode.INTERNAL_SERVER_ERROR)
            )
        except Exception as exc:
            logger.debug("Could not deliver error to %s: %s", connection_id, exc)


class QueueWorker:
    """Pulls one message at a time from the work queue and dispatches it."""

    def __init__(
        self,
        queue: WorkQueue,
        dispatcher: WorkDispatcher,
        poll_interval: float = 1.0,
        name: str = "worker",
        instance_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._dispatcher = dispatcher
        self._instance_id = instance_id
        self._poll_interval = poll_interval
        self._name = name
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        logger.info("Queue worker %s started.", self._name)
        while not self._stopping.is_set():
            try:
                outcome = await self.process_next()
            except Exception:
                logger.exception("Queue worker %s failed to process a message", self._name)
                outcome = None
            if outcome is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Queue worker %s stopped.", self._name)

    async def process_next(self) -> DispatchOutcome | None:
        """
        Receive and process a single message.

        Returns the dispatch outcome, or None when the queue was empty or the
        item belongs to another instance. The message is deleted once
        processing finishes; a worker crash before that leaves it for
        redelivery.
        """
        message = await self._queue.receive()
        if message is None:
            return None

        item = self._decode(message)
        if item is None:
            await self._queue.delete(message)
            return DispatchOutcome.FAILED

        if self._instance_id and item.instance_id not in (None, self._instance_id):
            # Only the owning instance can reach the socket; leave it queued.
            logger.error(
                "Work item for connection %s belongs to instance %s, not %s",
                item.connection_id,
                item.instance_id,
                self._instance_id,
            )
            return None

        if message.dequeue_count > 1:
            logger.warning(
                "Redelivered work item for connection %s (attempt %d)",
                item.connection_id,
                message.dequeue_count,
            )

        outcome = await self._dispatcher.dispatch(item)
        logger.info("Work item for connection %s: %s", item.connection_id, outcome.value)
        await self._queue.delete(message)
        return outcome

    @staticmethod
    def _decode(message: ReceivedMessage) -> WorkItem | None:
        try:
            return WorkItem.model_validate_json(message.body)
        except ValidationError as exc:
            logger.error("Dropping undecodable work item: %s", exc)
            return None
