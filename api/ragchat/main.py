"""
FastAPI application entrypoint.

Registers routers, configures CORS, initializes telemetry, creates the
Azure clients and services on startup, and runs the queue workers that
answer questions in the background.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.data.tables.aio import TableClient
from azure.identity.aio import DefaultAzureCredential, get_bearer_token_provider
from azure.search.documents.aio import SearchClient
from azure.storage.queue.aio import QueueClient
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncAzureOpenAI

from ragchat.core.config import get_settings
from ragchat.core.security import build_token_verifier
from ragchat.core.telemetry import setup_telemetry
from ragchat.routers import chat, health, threads
from ragchat.services.delivery import ConnectionRegistry, WebSocketDeliveryChannel
from ragchat.services.dispatcher import QueueWorker, WorkDispatcher
from ragchat.services.openai_client import OpenAIService
from ragchat.services.rag import GenerationOrchestrator
from ragchat.services.search import PassageSearchService
from ragchat.services.session import SessionRouter
from ragchat.services.thread_store import ThreadStore
from ragchat.services.work_queue import AzureStorageWorkQueue, InMemoryWorkQueue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """
    Application lifespan handler.
    Initializes service clients and queue workers on startup,
    stops workers and closes clients on shutdown.
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(level=settings.log_level)

    # Initialize telemetry
    setup_telemetry(settings.applicationinsights_connection_string)

    # Azure clients (Entra ID auth, no keys)
    credential = DefaultAzureCredential()
    table_client = TableClient(
        endpoint=settings.azure_storage_table_endpoint,
        table_name=settings.chat_history_table_name,
        credential=credential,
    )
    search_client = SearchClient(
        endpoint=settings.azure_search_endpoint,
        index_name=settings.azure_search_index_name,
        credential=credential,
    )
    openai_client = AsyncAzureOpenAI(
        azure_endpoint=settings.azure_openai_endpoint,
        azure_ad_token_provider=get_bearer_token_provider(
            credential, "https://cognitiveservices.azure.com/.default"
        ),
        api_version=settings.azure_openai_api_version,
    )

    queue_client = None
    if settings.queue_backend == "memory":
        logger.warning("Using in-memory work queue. Items are lost on restart.")
        work_queue = InMemoryWorkQueue()
    else:
        queue_client = QueueClient(
            account_url=settings.azure_storage_queue_endpoint,
            queue_name=settings.instance_queue_name,
            credential=credential,
        )
        try:
            await queue_client.create_queue()
        except ResourceExistsError:
            pass
        logger.info("Reading work items from queue %s.", settings.instance_queue_name)
        work_queue = AzureStorageWorkQueue(
            queue_client, visibility_timeout=settings.queue_visibility_timeout_seconds
        )

    # Services
    registry = ConnectionRegistry()
    channel = WebSocketDeliveryChannel(registry)
    thread_store = ThreadStore(table_client)
    dispatcher = WorkDispatcher(
        thread_store=thread_store,
        search_service=PassageSearchService(search_client, settings),
        orchestrator=GenerationOrchestrator(
            OpenAIService(openai_client, settings), channel, settings.memory_turns
        ),
        channel=channel,
        memory_turns=settings.memory_turns,
        timeout_seconds=settings.pipeline_timeout_seconds,
    )

    # Store in app state for dependency injection
    application.state.connection_registry = registry
    application.state.thread_store = thread_store
    application.state.token_verifier = build_token_verifier(settings)
    application.state.session_router = SessionRouter(
        registry, work_queue, instance_id=settings.instance_id
    )

    workers = [
        QueueWorker(
            work_queue,
            dispatcher,
            poll_interval=settings.queue_poll_interval_seconds,
            name=f"worker-{i}",
            instance_id=settings.instance_id,
        )
        for i in range(settings.worker_count)
    ]
    tasks = [asyncio.create_task(worker.run()) for worker in workers]

    logger.info("RAG chat service started with %d workers.", len(workers))
    yield
    logger.info("RAG chat service shutting down.")

    for worker in workers:
        worker.stop()
    await asyncio.gather(*tasks, return_exceptions=True)

    await table_client.close()
    await search_client.close()
    await openai_client.close()
    if queue_client is not None:
        # Pending items target this instance's sockets, which are now closed.
        try:
            await queue_client.delete_queue()
        except AzureError as exc:
            logger.warning("Could not delete queue %s: %s", settings.instance_queue_name, exc)
        await queue_client.close()
    await credential.close()


app = FastAPI(
    title="RAG Chat Service",
    description="Streaming retrieval-augmented chat with threaded history.",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router)
app.include_router(threads.router)
app.include_router(chat.router)
