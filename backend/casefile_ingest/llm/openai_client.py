"""
OpenAI clients (AsyncOpenAI) implementing the same interfaces as Vertex AI.

Selected with AI_PROVIDER=openai. text-embedding-3-* models accept a
`dimensions` argument, so the vector size still matches the pgvector column.
Inline media is sent as base64 data URLs; only images are accepted, which
covers OCR (uploaded images and rendered PDF pages).
"""

from __future__ import annotations

import base64
import logging
from typing import Sequence

import openai
from openai import AsyncOpenAI

from casefile_ingest.core.errors import (
    AIAuthError,
    AIServiceError,
    EmbeddingServiceError,
    GenerationServiceError,
)
from casefile_ingest.llm.base import (
    EmbeddingClient,
    GenerativeClient,
    InlineMedia,
    call_with_retries,
    is_retryable_status,
)

logger = logging.getLogger(__name__)


def _map_openai_error(exc: openai.OpenAIError, error_cls: type[AIServiceError]) -> AIServiceError:
    if isinstance(exc, openai.AuthenticationError):
        return AIAuthError(f"OpenAI authentication failed: {exc}", status_code=401)
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return error_cls(f"OpenAI transport error: {exc}", retryable=True)
    if isinstance(exc, openai.APIStatusError):
        return error_cls(
            f"OpenAI request failed: {exc.status_code} {exc.message}",
            retryable=is_retryable_status(exc.status_code),
            status_code=exc.status_code,
        )
    return error_cls(f"OpenAI error: {exc}")


class _OpenAIBase:

    def __init__(
        self,
        model:       str,
        *,
        api_key:     str = "",
        timeout:     float = 60.0,
        max_retries: int = 2,
        base_delay:  float = 1.0,
        max_delay:   float = 10.0,
        client:      AsyncOpenAI | None = None,
    ) -> None:
        self._model       = model
        # SDK-level retries disabled; call_with_retries owns back-off
        self._client      = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._max_retries = max_retries
        self._base_delay  = base_delay
        self._max_delay   = max_delay

    @property
    def model_name(self) -> str:
        return self._model

    async def _retrying(self, call, label: str):
        return await call_with_retries(
            call,
            label=label,
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
        )


class OpenAIEmbeddingClient(_OpenAIBase, EmbeddingClient):

    def __init__(self, model: str = "text-embedding-3-small", *, dimensions: int = 768, **kwargs) -> None:
        _OpenAIBase.__init__(self, model, **kwargs)
        EmbeddingClient.__init__(self, dimensions)

    async def _embed_once(self, text: str) -> list[float]:
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=text,
                dimensions=self.dimensions,
            )
        except openai.OpenAIError as exc:
            raise _map_openai_error(exc, EmbeddingServiceError) from exc

        if not response.data:
            raise EmbeddingServiceError("OpenAI returned no embedding data")
        return response.data[0].embedding

    async def embed(self, text: str) -> list[float]:
        vector = await self._retrying(lambda: self._embed_once(text), "openai:embeddings")
        return self._check_dimensions(vector)


class OpenAIGenerativeClient(_OpenAIBase, GenerativeClient):

    def __init__(self, model: str = "gpt-4o-mini", *, max_output_tokens: int = 8192, **kwargs) -> None:
        super().__init__(model, **kwargs)
        self._max_output_tokens = max_output_tokens

    async def _generate_once(self, messages: list[dict], temperature: float, json_output: bool) -> str:
        kwargs: dict = {
            "model":       self._model,
            "messages":    messages,
            "temperature": temperature,
            "max_tokens":  self._max_output_tokens,
        }
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise _map_openai_error(exc, GenerationServiceError) from exc

        if not response.choices:
            raise GenerationServiceError("OpenAI returned no choices")
        return response.choices[0].message.content or ""

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        media: Sequence[InlineMedia] = (),
        temperature: float = 0.0,
        json_output: bool = False,
        response_schema: dict | None = None,
    ) -> str:
        content: list[dict] = [{"type": "text", "text": prompt}]
        for item in media:
            if not item.mime_type.startswith("image/"):
                raise GenerationServiceError(f"Unsupported inline media type: {item.mime_type}")
            encoded = base64.b64encode(item.data).decode("ascii")
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{item.mime_type};base64,{encoded}"},
            })

        messages: list[dict] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": content})

        return await self._retrying(
            lambda: self._generate_once(messages, temperature, json_output or response_schema is not None),
            "openai:chat",
        )
