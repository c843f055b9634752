"""
Unit tests for the Azure AI Search wrapper.
"""

import pytest

from ragchat.core.config import Settings
from ragchat.core.errors import RetrievalError
from ragchat.services.search import PassageSearchService


async def _aiter(items):
    for item in items:
        yield item


class MockSearchClient:
    """Mock async Azure AI Search client."""

    def __init__(self, docs):
        self._docs = docs
        self.kwargs = None

    async def search(self, **kwargs):
        self.kwargs = kwargs
        return _aiter(self._docs)


@pytest.fixture
def settings():
    return Settings(
        azure_openai_endpoint="https://openai.example.com",
        azure_search_endpoint="https://search.example.com",
        azure_search_top_k=3,
    )


@pytest.mark.asyncio
async def test_normalizes_hits(settings):
    client = MockSearchClient(
        [
            {
                "content": "Passage one",
                "source_uri": "https://s/a.pdf",
                "page_number": 4,
                "@search.score": 1.5,
                "@search.reranker_score": 2.75,
            },
            {"content": "Passage two", "source_uri": "https://s/b.pdf", "page_number": "12"},
            {"content": "Passage three", "source_uri": "https://s/c.pdf", "@search.score": 0.3},
        ]
    )
    service = PassageSearchService(client, settings)

    results = await service.search("question")

    assert [r.text for r in results] == ["Passage one", "Passage two", "Passage three"]
    assert results[0].page == 4
    assert results[0].score == 2.75
    assert results[1].page == 12
    assert results[1].score is None
    assert results[2].page is None
    assert results[2].score == 0.3
    assert client.kwargs["search_text"] == "question"
    assert client.kwargs["top"] == 3


@pytest.mark.asyncio
async def test_unparseable_page_is_dropped(settings):
    client = MockSearchClient(
        [{"content": "p", "source_uri": "https://s/a.pdf", "page_number": "iv"}]
    )

    results = await PassageSearchService(client, settings).search("q")

    assert results[0].page is None


@pytest.mark.asyncio
async def test_empty_result_set_is_valid(settings):
    results = await PassageSearchService(MockSearchClient([]), settings).search("q")

    assert results == []


@pytest.mark.asyncio
async def test_hit_without_source_raises(settings):
    client = MockSearchClient([{"content": "orphan passage"}])

    with pytest.raises(RetrievalError):
        await PassageSearchService(client, settings).search("q")
