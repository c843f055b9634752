"""
Azure OpenAI client wrapper.

Streams chat completions as a finite sequence of text deltas terminated by
exactly one explicit stop event. Inference parameters are fixed per
deployment from settings. Azure OpenAI content filtering surfaces as a
stop event with reason ``content_filter``, whether the prompt or the
completion was blocked.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from openai import AsyncAzureOpenAI, BadRequestError

from ragchat.core.config import Settings

logger = logging.getLogger(__name__)

CONTENT_FILTER = "content_filter"


@dataclass(frozen=True)
class TextDelta:
    """An incremental piece of the answer."""

    text: str


@dataclass(frozen=True)
class StreamStop:
    """Explicit end of the stream (``stop``, ``length``, ``content_filter``...)."""

    reason: str

    @property
    def blocked(self) -> bool:
        return self.reason == CONTENT_FILTER


GenerationEvent = TextDelta | StreamStop


class OpenAIService:
    """Wrapper around Azure OpenAI streaming chat completions."""

    def __init__(self, client: AsyncAzureOpenAI, settings: Settings) -> None:
        self._client = client
        self._deployment = settings.azure_openai_chat_deployment
        self._max_tokens = settings.max_tokens
        self._temperature = settings.temperature
        self._top_p = settings.top_p
        self._stop = list(settings.stop_sequences)

    @property
    def deployment(self) -> str:
        return self._deployment

    async def stream_chat(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
    ) -> AsyncIterator[GenerationEvent]:
        """
        Stream a chat completion.

        Args:
            system_prompt: The grounded system instruction.
            messages: Conversation history followed by the current question.

        Yields:
            TextDelta events, then one StreamStop. If the underlying stream
            ends without a finish reason, no StreamStop is yielded.
        """
        try:
            stream = await self._client.chat.completions.create(
                model=self._deployment,
                messages=[{"role": "system", "content": system_prompt}, *messages],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                top_p=self._top_p,
                stop=self._stop,
                stream=True,
            )
        except BadRequestError as exc:
            if exc.code == CONTENT_FILTER:
                logger.warning("Prompt blocked by the content filter.")
                yield StreamStop(reason=CONTENT_FILTER)
                return
            raise

        try:
            async for chunk in stream:
                # Azure sends prompt filter results in a chunk without choices
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta is not None and choice.delta.content:
                    yield TextDelta(text=choice.delta.content)
                if choice.finish_reason is not None:
                    logger.info("Chat stream stopped: %s", choice.finish_reason)
                    yield StreamStop(reason=choice.finish_reason)
                    return
        finally:
            await stream.close()
