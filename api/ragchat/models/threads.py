"""
Pydantic models for threads, turns and retrieval grounding.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetrievalResult(CamelModel):
    """One passage hit returned by the search capability."""

    text: str = Field(..., description="Passage text")
    source_id: str = Field(..., description="Raw source document identifier (URI)")
    page: int | None = Field(None, description="Page number within the source, if known")
    score: float | None = Field(None, description="Relevance score, if provided")


class ReferenceHit(CamelModel):
    """A single passage within a grouped reference."""

    text: str
    page: int | None = None
    score: float | None = None


class Reference(CamelModel):
    """Retrieval hits grouped by source document for display."""

    filename: str = Field(..., description="Final path segment of the source id")
    source_path: str = Field(..., description="Raw source identifier used as grouping key")
    hits: list[ReferenceHit] = Field(default_factory=list)


class ThreadMetadata(CamelModel):
    """Thread header. Only ``updated_at`` changes after creation."""

    thread_id: str
    title: str
    created_at: int = Field(..., description="Epoch milliseconds")
    updated_at: int = Field(..., description="Epoch milliseconds")


class ThreadTurn(CamelModel):
    """One question/answer exchange. Immutable once written."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    user_question: str
    llm_answer: str
    created_at: int = Field(..., description="Epoch milliseconds")
    references: list[Reference] = Field(default_factory=list)


class Thread(CamelModel):
    """Thread metadata plus a window of turns, newest first."""

    metadata: ThreadMetadata
    turns: list[ThreadTurn] = Field(default_factory=list)
