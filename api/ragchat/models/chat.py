"""
Pydantic models for the WebSocket message contracts.

Inbound (client -> server) messages, the queued work item, and outbound
(server -> client) delivery events are closed tagged unions keyed on
``type``.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import Field

from ragchat.models.threads import CamelModel, Reference


class ErrorCode(str, Enum):
    THREAD_NOT_FOUND = "THREAD_NOT_FOUND"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"


class UserMessage(CamelModel):
    """A question sent by the client over the WebSocket."""

    type: Literal["question"]
    thread_id: str | None = Field(None, description="Existing thread; omit to start a new one")
    input: str = Field(..., min_length=1, description="The user's question")


class WorkItem(CamelModel):
    """One unit of queued work: a single inbound question to answer."""

    type: Literal["question"] = "question"
    connection_id: str
    thread_id: str | None = None
    question: str
    user_id: str
    instance_id: str | None = Field(None, description="Instance holding the connection")


class _DeliveryEventBase(CamelModel):
    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AckEvent(_DeliveryEventBase):
    type: Literal["ack"] = "ack"
    thread_id: str


class ChunkEvent(_DeliveryEventBase):
    type: Literal["chunk"] = "chunk"
    text: str


class ReferencesEvent(_DeliveryEventBase):
    type: Literal["references"] = "references"
    references: list[Reference] = Field(default_factory=list)


class EosEvent(_DeliveryEventBase):
    type: Literal["eos"] = "eos"


class ErrorEvent(_DeliveryEventBase):
    type: Literal["error"] = "error"
    code: ErrorCode


DeliveryEvent = Annotated[
    Union[AckEvent, ChunkEvent, ReferencesEvent, EosEvent, ErrorEvent],
    Field(discriminator="type"),
]
