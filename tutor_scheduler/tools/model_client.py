"""
Embedding, reasoning, and reply-streaming calls to the model service.

The matcher and controller depend only on the three protocols below.
``OpenAIModelClient`` implements all of them against the OpenAI API;
every transport or schema failure is re-raised as
``DependencyUnavailableError`` so the owning component can fall back.
"""

import logging
from typing import AsyncIterator, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from tutor_scheduler.config import ModelConfig, settings
from tutor_scheduler.errors import DependencyUnavailableError, ReasoningParseError
from tutor_scheduler.prompts.prompt_templates import build_reasoning_prompt
from tutor_scheduler.prompts.system_prompts import MATCH_SYSTEM_PROMPT, REPLY_SYSTEM_PROMPT
from tutor_scheduler.schemas.match_schema import Candidate, ReasoningOutput, SearchCriteria

logger = logging.getLogger(__name__)


class EmbeddingService(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class ReasoningService(Protocol):
    async def reason(
        self, criteria: SearchCriteria, candidates: Sequence[Candidate]
    ) -> ReasoningOutput: ...


class ReplyStreamer(Protocol):
    def stream_reply(self, prompt: str, history: Sequence[dict[str, str]]) -> AsyncIterator[str]: ...


class OpenAIModelClient:
    """Model service client backed by ``AsyncOpenAI``.

    The underlying client is created lazily so the app can start (and
    run on fallbacks) without an API key.
    """

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._config = config or settings.model
        self._client = client

    def _require_client(self, dependency: str) -> AsyncOpenAI:
        if self._client is None:
            if not self._config.api_key:
                raise DependencyUnavailableError(dependency, "OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self._config.api_key, timeout=self._config.request_timeout_sec
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        client = self._require_client("embedding")
        try:
            response = await client.embeddings.create(
                model=self._config.embedding_model,
                input=text,
                dimensions=self._config.embedding_dimensions,
            )
        except openai.OpenAIError as exc:
            raise DependencyUnavailableError("embedding", str(exc)) from exc
        if not response.data:
            raise DependencyUnavailableError("embedding", "empty embedding response")
        return list(response.data[0].embedding)

    async def reason(
        self, criteria: SearchCriteria, candidates: Sequence[Candidate]
    ) -> ReasoningOutput:
        """Ask the model to pick one candidate in the fixed response schema.

        Raises:
            ReasoningParseError: The reply was refused or did not fit the schema.
            DependencyUnavailableError: The service could not be reached.
        """
        client = self._require_client("reasoning")
        try:
            completion = await client.beta.chat.completions.parse(
                model=self._config.reasoning_model,
                temperature=self._config.reasoning_temperature,
                messages=[
                    {"role": "system", "content": MATCH_SYSTEM_PROMPT},
                    {"role": "user", "content": build_reasoning_prompt(criteria, candidates)},
                ],
                response_format=ReasoningOutput,
            )
        except ValidationError as exc:
            raise ReasoningParseError(str(exc)) from exc
        except openai.LengthFinishReasonError as exc:
            raise ReasoningParseError("response truncated") from exc
        except openai.OpenAIError as exc:
            raise DependencyUnavailableError("reasoning", str(exc)) from exc

        message = completion.choices[0].message
        if message.refusal:
            raise ReasoningParseError(f"model refused: {message.refusal}")
        if message.parsed is None:
            raise ReasoningParseError()
        return message.parsed

    async def stream_reply(
        self, prompt: str, history: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        """Yield reply text deltas for a prompt, given prior chat history."""
        client = self._require_client("reply")
        messages = [{"role": "system", "content": REPLY_SYSTEM_PROMPT}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": prompt})
        try:
            stream = await client.chat.completions.create(
                model=self._config.reasoning_model,
                temperature=self._config.reply_temperature,
                messages=messages,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as exc:
            raise DependencyUnavailableError("reply", str(exc)) from exc
