"""
Generation Orchestrator.

Builds the grounded prompt and drives one streamed generation:
1. Embed retrieved passages into the system instruction.
2. Replay the memory window (oldest -> newest) as user/assistant turns.
3. Stream the answer, chaining each chunk send behind the previous one.
4. Finalize only on an explicit stop event from the model.
"""

import logging
from contextlib import aclosing
from dataclasses import dataclass

from ragchat.core.errors import GenerationIncompleteError
from ragchat.core.telemetry import get_tracer
from ragchat.models.chat import ChunkEvent
from ragchat.models.threads import RetrievalResult, Thread
from ragchat.services.delivery import DeliveryChannel, SendChain
from ragchat.services.openai_client import OpenAIService, StreamStop
from ragchat.services.references import source_filename

logger = logging.getLogger(__name__)

REFUSAL_MESSAGE = "I couldn't find the information I needed to answer."

BLOCKED_MESSAGE = (
    "Sorry, this request was blocked by the content safety policy "
    "and cannot be answered."
)

SYSTEM_PROMPT = """\
You are an assistant that answers questions using retrieved document passages.
Answer the user's current question using the question itself, the past \
conversation history, and the retrieved passages below.

## Rules
1. Use ONLY knowledge expressed in the retrieved passages.
2. If the passages contain nothing relevant, reply exactly:
   "__REFUSAL__" No other words are permitted.
3. Answer in Markdown. Do not use XML tags in your answer.

## Guidelines
- Consider the conversation history to keep the discussion coherent.
- Address the question directly; leave out details that do not help answer it.
- Write clearly and concisely.

<retrieved_document>
__REFERENCES__
</retrieved_document>
""".replace("__REFUSAL__", REFUSAL_MESSAGE)


@dataclass
class GenerationResult:
    answer: str
    stop_reason: str
    blocked: bool = False
    chunk_count: int = 0


class GenerationOrchestrator:
    """Turns a question, its grounding and the thread history into a streamed answer."""

    def __init__(
        self,
        openai_service: OpenAIService,
        channel: DeliveryChannel,
        memory_turns: int = 10,
    ) -> None:
        self._openai = openai_service
        self._channel = channel
        self._memory_turns = memory_turns
        self._tracer = get_tracer()

    async def generate(
        self,
        question: str,
        results: list[RetrievalResult],
        thread: Thread,
        connection_id: str,
    ) -> GenerationResult:
        """
        Stream an answer to ``connection_id`` and return the full text.

        Chunk events are sent in emission order. If the content filter
        blocks the prompt or the completion, a fixed notice is sent and
        returned in place of the partial answer.

        Raises:
            GenerationIncompleteError: The stream ended without a stop event.
            ConnectionGoneError: The client disconnected mid-stream.
        """
        with self._tracer.start_as_current_span("rag.generate") as span:
            system_prompt = self.build_system_prompt(results)
            messages = self.build_messages(question, thread)
            span.set_attribute("rag.history_messages", len(messages) - 1)

            chain = SendChain(self._channel, connection_id)
            parts: list[str] = []
            stop: StreamStop | None = None
            try:
                async with aclosing(self._openai.stream_chat(system_prompt, messages)) as stream:
                    async for event in stream:
                        if isinstance(event, StreamStop):
                            stop = event
                            break
                        parts.append(event.text)
                        chain.push(ChunkEvent(text=event.text))

                if stop is None:
                    raise GenerationIncompleteError(
                        f"Stream ended without a stop event after {len(parts)} chunks"
                    )

                if stop.blocked:
                    logger.warning("Generation blocked by content filter for %s", connection_id)
                    chain.push(ChunkEvent(text=BLOCKED_MESSAGE))

                await chain.drain()
            finally:
                await chain.abort()

            span.set_attribute("rag.chunks", len(parts))
            span.set_attribute("rag.stop_reason", stop.reason)
            return GenerationResult(
                answer=BLOCKED_MESSAGE if stop.blocked else "".join(parts),
                stop_reason=stop.reason,
                blocked=stop.blocked,
                chunk_count=len(parts),
            )

    @staticmethod
    def build_system_prompt(results: list[RetrievalResult]) -> str:
        """Embed retrieved passages as ``<reference>`` blocks."""
        blocks = [
            "  <reference>\n"
            f"    <document_name>{source_filename(r.source_id)}</document_name>\n"
            f"    <text>{r.text}</text>\n"
            "  </reference>"
            for r in results
        ]
        return SYSTEM_PROMPT.replace("__REFERENCES__", "\n".join(blocks))

    def build_messages(self, question: str, thread: Thread) -> list[dict[str, str]]:
        """Memory window (oldest -> newest) followed by the current question."""
        window = thread.turns[: self._memory_turns]
        messages: list[dict[str, str]] = []
        for turn in reversed(window):
            messages.append({"role": "user", "content": turn.user_question})
            messages.append({"role": "assistant", "content": turn.llm_answer})
        messages.append({"role": "user", "content": question})
        return messages
