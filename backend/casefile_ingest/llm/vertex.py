"""
Vertex AI clients over plain HTTPS (httpx).

Endpoints (publisher models):

  Embeddings   POST {base}/models/{model}:predict
               {"instances": [{"content": "<text>"}]}
               → {"predictions": [{"embeddings": {"values": [...]}}]}

  Generation   POST {base}/models/{model}:generateContent
               {"systemInstruction": {"parts": [{"text": ...}]},
                "contents": [{"role": "user", "parts": [
                    {"text": "<prompt>"},
                    {"inlineData": {"mimeType": "image/png", "data": "<base64>"}}]}],
                "generationConfig": {"temperature": 0, "responseMimeType": "application/json"}}
               → {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

  base = https://{location}-aiplatform.googleapis.com/v1/projects/{project}
         /locations/{location}/publishers/google

Every request carries a bounded httpx timeout. Timeouts, transport errors,
429 and 5xx are flagged retryable; everything else fails the unit at once.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Sequence

import httpx

from casefile_ingest.core.errors import (
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
from casefile_ingest.llm.google_auth import ServiceAccountTokenProvider

logger = logging.getLogger(__name__)


class _VertexEndpoint:
    """Shared request plumbing: URL building, bearer auth, error mapping."""

    def __init__(
        self,
        tokens:      ServiceAccountTokenProvider,
        project_id:  str,
        location:    str,
        model:       str,
        *,
        timeout:     float = 60.0,
        max_retries: int = 2,
        base_delay:  float = 1.0,
        max_delay:   float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tokens      = tokens
        self._project_id  = project_id
        self._location    = location
        self._model       = model
        self._timeout     = timeout
        self._max_retries = max_retries
        self._base_delay  = base_delay
        self._max_delay   = max_delay
        self._http        = http_client

    def _url(self, method: str) -> str:
        host = (
            "aiplatform.googleapis.com" if self._location == "global"
            else f"{self._location}-aiplatform.googleapis.com"
        )
        return (
            f"https://{host}/v1/projects/{self._project_id}/locations/{self._location}"
            f"/publishers/google/models/{self._model}:{method}"
        )

    async def _post_once(self, method: str, payload: dict, error_cls: type[AIServiceError]) -> dict:
        token = await self._tokens.get_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        url = self._url(method)

        t0 = time.monotonic()
        try:
            if self._http is not None:
                resp = await self._http.post(url, json=payload, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise error_cls(f"Vertex AI {method} timed out after {self._timeout}s", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"Vertex AI {method} transport error: {exc}", retryable=True) from exc

        elapsed_ms = (time.monotonic() - t0) * 1000
        if resp.status_code != 200:
            raise error_cls(
                f"Vertex AI {method} failed: {resp.status_code} {resp.text[:300]}",
                retryable=is_retryable_status(resp.status_code),
                status_code=resp.status_code,
            )

        logger.debug("Vertex AI call | method=%s model=%s ms=%.0f", method, self._model, elapsed_ms)
        try:
            data = resp.json()
        except ValueError as exc:
            raise error_cls(
                f"Malformed Vertex AI {method} response: {resp.text[:200]}", retryable=True,
            ) from exc
        if not isinstance(data, dict):
            raise error_cls(f"Malformed Vertex AI {method} response: {str(data)[:200]}", retryable=True)
        return data

    async def _post(self, method: str, payload: dict, error_cls: type[AIServiceError]) -> dict:
        return await call_with_retries(
            lambda: self._post_once(method, payload, error_cls),
            label=f"vertex:{method}",
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
        )


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class VertexEmbeddingClient(_VertexEndpoint, EmbeddingClient):

    def __init__(self, tokens: ServiceAccountTokenProvider, project_id: str, location: str,
                 model: str = "text-embedding-004", *, dimensions: int = 768, **kwargs) -> None:
        _VertexEndpoint.__init__(self, tokens, project_id, location, model, **kwargs)
        EmbeddingClient.__init__(self, dimensions)

    @property
    def model_name(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        payload = {
            "instances":  [{"content": text}],
            "parameters": {"outputDimensionality": self.dimensions},
        }
        data = await self._post("predict", payload, EmbeddingServiceError)
        try:
            values = data["predictions"][0]["embeddings"]["values"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingServiceError(f"Malformed embedding response: {str(data)[:200]}") from exc
        return self._check_dimensions(values)


# ---------------------------------------------------------------------------
# Generation (Gemini)
# ---------------------------------------------------------------------------

class VertexGenerativeClient(_VertexEndpoint, GenerativeClient):

    def __init__(self, tokens: ServiceAccountTokenProvider, project_id: str, location: str,
                 model: str = "gemini-2.5-pro", *, max_output_tokens: int = 8192, **kwargs) -> None:
        super().__init__(tokens, project_id, location, model, **kwargs)
        self._max_output_tokens = max_output_tokens

    @property
    def model_name(self) -> str:
        return self._model

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
        parts: list[dict] = [{"text": prompt}]
        for item in media:
            parts.append({
                "inlineData": {
                    "mimeType": item.mime_type,
                    "data":     base64.b64encode(item.data).decode("ascii"),
                },
            })

        generation_config: dict = {
            "temperature":     temperature,
            "maxOutputTokens": self._max_output_tokens,
        }
        if json_output or response_schema:
            generation_config["responseMimeType"] = "application/json"
        if response_schema:
            generation_config["responseSchema"] = response_schema

        payload: dict = {
            "contents":         [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        data = await self._post("generateContent", payload, GenerationServiceError)

        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback", {})
            raise GenerationServiceError(f"Generation returned no candidates: {feedback}")

        try:
            content_parts = (candidates[0].get("content") or {}).get("parts") or []
            return "".join(p.get("text", "") for p in content_parts)
        except (AttributeError, TypeError) as exc:
            raise GenerationServiceError(f"Malformed generation response: {str(data)[:200]}") from exc
