"""
Azure Table Storage thread store.

Threads and turns share one table partitioned by user id. Row keys carry a
type prefix so each access pattern is a single range query:

    meta#<createdAt:013d>#<threadId>          thread metadata
    turn#<threadId>#<invertedCreatedAt:013d>  one turn

Table Storage only scans ascending by RowKey, so turn keys embed an
inverted timestamp to read newest-first without a client-side sort.
"""

import json
import logging
import time
import uuid
from collections.abc import Callable

from azure.data.tables import EdmType, EntityProperty, UpdateMode
from azure.data.tables.aio import TableClient

from ragchat.core.errors import DuplicateThreadError, ThreadNotFoundError
from ragchat.core.telemetry import get_tracer
from ragchat.models.threads import RetrievalResult, Thread, ThreadMetadata, ThreadTurn
from ragchat.services.references import aggregate_references

logger = logging.getLogger(__name__)

MAX_TIMESTAMP = 9_999_999_999_999

META_PREFIX = "meta#"
TURN_PREFIX = "turn#"

# Filters are exclusive on both ends; "$" sorts directly after "#".
RANGE_FILTER = "PartitionKey eq @pk and RowKey gt @lo and RowKey lt @hi"
THREAD_FILTER = RANGE_FILTER + " and ThreadId eq @thread_id"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def meta_row_key(metadata: ThreadMetadata) -> str:
    return f"{META_PREFIX}{metadata.created_at:013d}#{metadata.thread_id}"


def turn_prefix(thread_id: str) -> str:
    return f"{TURN_PREFIX}{thread_id}#"


def turn_row_key(thread_id: str, created_at: int) -> str:
    return f"{turn_prefix(thread_id)}{MAX_TIMESTAMP - created_at:013d}"


def _prefix_end(prefix: str) -> str:
    return prefix[:-1] + "$"


# Epoch-ms values exceed Edm.Int32, the default for a plain int.
def _int64(value: int) -> EntityProperty:
    return EntityProperty(value, EdmType.INT64)


def _from_int64(value) -> int:
    if isinstance(value, EntityProperty):
        return int(value.value)
    return int(value)


class ThreadStore:
    """Persistence for thread metadata and turns, keyed by user."""

    def __init__(self, table: TableClient, clock: Callable[[], int] = now_ms) -> None:
        self._table = table
        self._clock = clock
        self._tracer = get_tracer()

    async def create_thread(self, user_id: str, first_question: str) -> ThreadMetadata:
        """Allocate a new thread titled with the first question."""
        timestamp = self._clock()
        metadata = ThreadMetadata(
            thread_id=str(uuid.uuid4()),
            title=first_question,
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self._tracer.start_as_current_span("threads.create"):
            await self._table.create_entity(
                entity={
                    "PartitionKey": user_id,
                    "RowKey": meta_row_key(metadata),
                    "ThreadId": metadata.thread_id,
                    "Title": metadata.title,
                    "CreatedAt": _int64(metadata.created_at),
                    "UpdatedAt": _int64(metadata.updated_at),
                }
            )
        logger.info("Created thread %s for user %s", metadata.thread_id, user_id)
        return metadata

    async def get_thread(
        self,
        user_id: str,
        thread_id: str,
        before: int | None = None,
        limit: int = 10,
    ) -> Thread:
        """
        Load a thread's metadata and up to ``limit`` turns, newest first.

        Args:
            user_id: Owner of the thread.
            thread_id: Thread to load.
            before: Optional cursor (epoch ms); only turns created strictly
                before it are returned.
            limit: Maximum number of turns.

        Raises:
            ThreadNotFoundError: No metadata matches.
            DuplicateThreadError: More than one metadata record matches.
        """
        with self._tracer.start_as_current_span("threads.get") as span:
            span.set_attribute("threads.limit", limit)
            metadata = await self._get_metadata(user_id, thread_id)

            prefix = turn_prefix(thread_id)
            lower = prefix if before is None else turn_row_key(thread_id, max(before, 0))
            entities = self._table.query_entities(
                RANGE_FILTER,
                parameters={"pk": user_id, "lo": lower, "hi": _prefix_end(prefix)},
                results_per_page=max(limit, 1),
            )

            turns: list[ThreadTurn] = []
            if limit > 0:
                async for entity in entities:
                    turns.append(self._to_turn(entity))
                    if len(turns) >= limit:
                        break

            span.set_attribute("threads.turn_count", len(turns))
            return Thread(metadata=metadata, turns=turns)

    async def append_turn(
        self,
        user_id: str,
        metadata: ThreadMetadata,
        question: str,
        answer: str,
        retrieval_results: list[RetrievalResult],
        system_template: str = "",
    ) -> ThreadTurn:
        """
        Write a new turn, then bump the thread's ``UpdatedAt``.

        The two writes are not atomic. Any failure propagates and the turn
        counts as not persisted.
        """
        timestamp = self._clock()
        with self._tracer.start_as_current_span("threads.append_turn"):
            await self._table.create_entity(
                entity={
                    "PartitionKey": user_id,
                    "RowKey": turn_row_key(metadata.thread_id, timestamp),
                    "ThreadId": metadata.thread_id,
                    "SystemTemplate": system_template,
                    "UserQuestion": question,
                    "LlmAnswer": answer,
                    "RetrievalResults": json.dumps(
                        [r.model_dump(by_alias=True, exclude_none=True) for r in retrieval_results]
                    ),
                    "CreatedAt": _int64(timestamp),
                }
            )
            await self._table.update_entity(
                entity={
                    "PartitionKey": user_id,
                    "RowKey": meta_row_key(metadata),
                    "UpdatedAt": _int64(timestamp),
                },
                mode=UpdateMode.MERGE,
            )

        logger.info("Appended turn to thread %s", metadata.thread_id)
        return ThreadTurn(
            user_question=question,
            llm_answer=answer,
            created_at=timestamp,
            references=aggregate_references(retrieval_results),
        )

    async def list_threads(self, user_id: str) -> list[ThreadMetadata]:
        """All of a user's threads, most recently updated first."""
        entities = self._table.query_entities(
            RANGE_FILTER,
            parameters={"pk": user_id, "lo": META_PREFIX, "hi": _prefix_end(META_PREFIX)},
        )
        threads = [self._to_metadata(entity) async for entity in entities]
        threads.sort(key=lambda m: m.updated_at, reverse=True)
        return threads

    async def _get_metadata(self, user_id: str, thread_id: str) -> ThreadMetadata:
        entities = self._table.query_entities(
            THREAD_FILTER,
            parameters={
                "pk": user_id,
                "lo": META_PREFIX,
                "hi": _prefix_end(META_PREFIX),
                "thread_id": thread_id,
            },
        )
        matches = [entity async for entity in entities]

        if not matches:
            raise ThreadNotFoundError(user_id, thread_id)
        if len(matches) > 1:
            raise DuplicateThreadError(user_id, thread_id, len(matches))
        return self._to_metadata(matches[0])

    @staticmethod
    def _to_metadata(entity) -> ThreadMetadata:
        return ThreadMetadata(
            thread_id=entity["ThreadId"],
            title=entity["Title"],
            created_at=_from_int64(entity["CreatedAt"]),
            updated_at=_from_int64(entity["UpdatedAt"]),
        )

    @staticmethod
    def _to_turn(entity) -> ThreadTurn:
        raw = json.loads(entity.get("RetrievalResults") or "[]")
        results = [RetrievalResult.model_validate(r) for r in raw]
        return ThreadTurn(
            user_question=entity["UserQuestion"],
            llm_answer=entity["LlmAnswer"],
            created_at=_from_int64(entity["CreatedAt"]),
            references=aggregate_references(results),
        )
