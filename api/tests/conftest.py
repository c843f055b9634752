"""
Shared mock collaborators for the pipeline tests.
"""

import asyncio

import pytest
from azure.core.exceptions import ResourceExistsError
from azure.data.tables._deserialize import _convert_to_entity
from azure.data.tables._serialize import _add_entity_properties

from ragchat.core.errors import ConnectionGoneError, DeliveryError
from ragchat.services.delivery import DeliveryChannel
from ragchat.services.dispatcher import WorkDispatcher
from ragchat.services.openai_client import StreamStop, TextDelta
from ragchat.services.rag import GenerationOrchestrator
from ragchat.services.thread_store import ThreadStore


async def _aiter(items):
    for item in items:
        yield item


class MockTableClient:
    """
    In-memory stand-in for the async Azure TableClient.

    Entities are kept in their wire form and read back through the SDK's
    own serializer and deserializer.
    """

    def __init__(self):
        self.entities: dict[tuple[str, str], dict] = {}

    async def create_entity(self, entity):
        key = (entity["PartitionKey"], entity["RowKey"])
        if key in self.entities:
            raise ResourceExistsError("The specified entity already exists.")
        self.entities[key] = _add_entity_properties(entity)

    async def update_entity(self, entity, mode=None):
        key = (entity["PartitionKey"], entity["RowKey"])
        self.entities[key].update(_add_entity_properties(entity))

    def query_entities(self, query_filter, parameters, results_per_page=None, select=None):
        matches = []
        for (pk, rk), entity in sorted(self.entities.items()):
            if pk != parameters["pk"]:
                continue
            if not parameters["lo"] < rk < parameters["hi"]:
                continue
            if "thread_id" in parameters and entity.get("ThreadId") != parameters["thread_id"]:
                continue
            matches.append(_convert_to_entity(entity))
        return _aiter(matches)


class MockClock:
    """Epoch-ms clock advancing 10ms per read."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        self.now += 10
        return self.now


class RecordingChannel(DeliveryChannel):
    """Delivery channel recording every successfully sent event."""

    def __init__(self):
        self.events = []
        self.gone_after_chunks = None
        self.fail_types: set[str] = set()

    async def send(self, connection_id, event):
        await asyncio.sleep(0)
        if event.type in self.fail_types:
            raise DeliveryError(f"cannot send {event.type}")
        if (
            event.type == "chunk"
            and self.gone_after_chunks is not None
            and len(self.chunks()) >= self.gone_after_chunks
        ):
            raise ConnectionGoneError(connection_id)
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]

    def chunks(self):
        return [e.text for e in self.events if e.type == "chunk"]


class MockSearchService:
    """Mock Azure AI Search service."""

    def __init__(self, results=None):
        self.results = results or []
        self.error = None
        self.queries = []

    async def search(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.results)


class MockOpenAIService:
    """Mock Azure OpenAI streaming service."""

    def __init__(self, events=None):
        self.events = events or [TextDelta("Hello"), TextDelta(" world"), StreamStop("stop")]
        self.delay = 0.0
        self.calls = []

    async def stream_chat(self, system_prompt, messages):
        self.calls.append((system_prompt, messages))
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event


@pytest.fixture
def table():
    return MockTableClient()


@pytest.fixture
def thread_store(table):
    return ThreadStore(table, clock=MockClock())


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def search():
    return MockSearchService()


@pytest.fixture
def openai():
    return MockOpenAIService()


@pytest.fixture
def orchestrator(openai, channel):
    return GenerationOrchestrator(openai, channel, memory_turns=10)


@pytest.fixture
def dispatcher(thread_store, search, orchestrator, channel):
    return WorkDispatcher(
        thread_store=thread_store,
        search_service=search,
        orchestrator=orchestrator,
        channel=channel,
        memory_turns=10,
        timeout_seconds=5.0,
    )
