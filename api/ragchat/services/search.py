"""
Azure AI Search client wrapper.

Runs a semantic-ranked text search against the document index and
normalizes the heterogeneous hit documents into ``RetrievalResult``.
"""

import logging
from typing import Any

from azure.search.documents.aio import SearchClient
from azure.search.documents.models import QueryType

from ragchat.core.config import Settings
from ragchat.core.errors import RetrievalError
from ragchat.core.telemetry import get_tracer
from ragchat.models.threads import RetrievalResult

logger = logging.getLogger(__name__)


class PassageSearchService:
    """Wrapper around Azure AI Search for passage retrieval."""

    def __init__(self, client: SearchClient, settings: Settings) -> None:
        self._client = client
        self._semantic_configuration = settings.azure_search_semantic_configuration
        self._top_k = settings.azure_search_top_k
        self._content_field = settings.azure_search_content_field
        self._source_field = settings.azure_search_source_field
        self._page_field = settings.azure_search_page_field
        self._tracer = get_tracer()

    async def search(self, query: str) -> list[RetrievalResult]:
        """
        Retrieve passages relevant to a free-text query.

        Args:
            query: The user's natural language question.

        Returns:
            RetrievalResult list ordered by relevance. May be empty, which
            means no grounding is available for the question.
        """
        with self._tracer.start_as_current_span("search.passages") as span:
            span.set_attribute("search.top_k", self._top_k)

            results = await self._client.search(
                search_text=query,
                select=[self._content_field, self._source_field, self._page_field],
                query_type=QueryType.SEMANTIC,
                semantic_configuration_name=self._semantic_configuration,
                top=self._top_k,
            )

            passages = [self._normalize(doc) async for doc in results]

            span.set_attribute("search.results_count", len(passages))
            logger.info("Search returned %d passages", len(passages))
            return passages

    def _normalize(self, doc: dict[str, Any]) -> RetrievalResult:
        text = doc.get(self._content_field)
        source_id = doc.get(self._source_field)
        if not text or not source_id:
            raise RetrievalError(
                f"Search hit is missing '{self._content_field}' or '{self._source_field}'"
            )

        return RetrievalResult(
            text=text,
            source_id=source_id,
            page=_parse_page(doc.get(self._page_field)),
            score=_parse_score(doc),
        )


def _parse_page(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_score(doc: dict[str, Any]) -> float | None:
    for key in ("@search.reranker_score", "@search.score"):
        score = doc.get(key)
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            return float(score)
    return None
