"""
Unit Tests — Vertex AI Clients
═══════════════════════════════
Tests for casefile_ingest/llm/vertex.py (+ retry helper in llm/base.py)

All HTTP goes through httpx.MockTransport; no request leaves the process.
"""

from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from casefile_ingest.core.errors import (
    AIAuthError,
    EmbeddingDimensionError,
    EmbeddingServiceError,
    GenerationServiceError,
)
from casefile_ingest.llm.base import InlineMedia
from casefile_ingest.llm.google_auth import ServiceAccountTokenProvider
from casefile_ingest.llm.vertex import VertexEmbeddingClient, VertexGenerativeClient

EMBED_URL = (
    "https://us-central1-aiplatform.googleapis.com/v1/projects/casefile-test/locations/us-central1"
    "/publishers/google/models/text-embedding-004:predict"
)


@pytest.fixture
def tokens():
    provider = MagicMock(spec=ServiceAccountTokenProvider)
    provider.get_token = AsyncMock(return_value="ya29.test")
    return provider


class _Recorder:
    """MockTransport handler answering requests from a queue, one response each."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def payload(self, i: int = 0) -> dict:
        return json.loads(self.requests[i].content)


def _embedding_client(tokens, recorder, **kwargs) -> VertexEmbeddingClient:
    return VertexEmbeddingClient(
        tokens, "casefile-test", "us-central1",
        dimensions=kwargs.pop("dimensions", 4),
        max_retries=kwargs.pop("max_retries", 2),
        base_delay=0, max_delay=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        **kwargs,
    )


def _generative_client(tokens, recorder, **kwargs) -> VertexGenerativeClient:
    return VertexGenerativeClient(
        tokens, "casefile-test", "us-central1", "gemini-2.5-pro",
        max_retries=kwargs.pop("max_retries", 2),
        base_delay=0, max_delay=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        **kwargs,
    )


def _embedding_response(values):
    return httpx.Response(200, json={"predictions": [{"embeddings": {"values": values}}]})


def _generation_response(*texts):
    return httpx.Response(200, json={
        "candidates": [{"content": {"role": "model", "parts": [{"text": t} for t in texts]}}],
    })


# ─────────────────────────────────────────────────────────────────────────────
# Embeddings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.llm
class TestVertexEmbeddingClient:

    async def test_request_shape(self, tokens):
        recorder = _Recorder(_embedding_response([0.1, 0.2, 0.3, 0.4]))
        client = _embedding_client(tokens, recorder)

        vector = await client.embed("Motion to dismiss")

        assert vector == [0.1, 0.2, 0.3, 0.4]
        request = recorder.requests[0]
        assert str(request.url) == EMBED_URL
        assert request.headers["authorization"] == "Bearer ya29.test"
        assert recorder.payload() == {
            "instances":  [{"content": "Motion to dismiss"}],
            "parameters": {"outputDimensionality": 4},
        }

    async def test_global_location_host(self, tokens):
        recorder = _Recorder(_embedding_response([0.0] * 4))
        client = VertexEmbeddingClient(
            tokens, "casefile-test", "global", dimensions=4,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        )
        await client.embed("x")
        assert recorder.requests[0].url.host == "aiplatform.googleapis.com"

    async def test_retries_transient_errors(self, tokens):
        recorder = _Recorder(
            httpx.Response(503, text="backend unavailable"),
            httpx.Response(429, text="quota"),
            _embedding_response([1, 2, 3, 4]),
        )
        vector = await _embedding_client(tokens, recorder).embed("retry me")

        assert vector == [1.0, 2.0, 3.0, 4.0]
        assert len(recorder.requests) == 3

    async def test_gives_up_after_max_retries(self, tokens):
        recorder = _Recorder(*(httpx.Response(503, text="backend unavailable") for _ in range(3)))

        with pytest.raises(EmbeddingServiceError) as exc_info:
            await _embedding_client(tokens, recorder, max_retries=2).embed("x")

        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 3

    async def test_client_error_not_retried(self, tokens):
        recorder = _Recorder(httpx.Response(400, json={"error": {"message": "bad request"}}))

        with pytest.raises(EmbeddingServiceError) as exc_info:
            await _embedding_client(tokens, recorder).embed("x")

        assert exc_info.value.retryable is False
        assert len(recorder.requests) == 1

    async def test_timeout_is_retryable(self, tokens):
        recorder = _Recorder(
            httpx.ReadTimeout("read timed out"),
            _embedding_response([0.5] * 4),
        )
        assert await _embedding_client(tokens, recorder).embed("x") == [0.5] * 4
        assert len(recorder.requests) == 2

    async def test_dimension_mismatch(self, tokens):
        recorder = _Recorder(_embedding_response([0.1] * 3))
        with pytest.raises(EmbeddingDimensionError):
            await _embedding_client(tokens, recorder).embed("x")

    async def test_malformed_response(self, tokens):
        recorder = _Recorder(httpx.Response(200, json={"predictions": []}))
        with pytest.raises(EmbeddingServiceError, match="Malformed"):
            await _embedding_client(tokens, recorder).embed("x")

    async def test_html_error_page_is_retried(self, tokens):
        recorder = _Recorder(
            httpx.Response(200, text="<html>502 Bad Gateway</html>"),
            _embedding_response([0.5] * 4),
        )

        assert await _embedding_client(tokens, recorder).embed("x") == [0.5] * 4
        assert len(recorder.requests) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Generation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.llm
class TestVertexGenerativeClient:

    async def test_json_request_shape(self, tokens):
        recorder = _Recorder(_generation_response('{"entities": ', "[]}"))
        client = _generative_client(tokens, recorder)

        text = await client.generate(
            "Extract entities",
            system_instruction="You are a legal analyst.",
            json_output=True,
            response_schema={"type": "OBJECT"},
        )

        assert text == '{"entities": []}'
        assert recorder.requests[0].url.path.endswith("/models/gemini-2.5-pro:generateContent")
        payload = recorder.payload()
        assert payload["systemInstruction"] == {"parts": [{"text": "You are a legal analyst."}]}
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "Extract entities"}]}]
        assert payload["generationConfig"]["responseMimeType"] == "application/json"
        assert payload["generationConfig"]["responseSchema"] == {"type": "OBJECT"}
        assert payload["generationConfig"]["temperature"] == 0.0

    async def test_inline_media(self, tokens, sample_png_bytes):
        recorder = _Recorder(_generation_response("SCANNED TEXT"))
        client = _generative_client(tokens, recorder)

        text = await client.generate(
            "Transcribe this page.",
            media=[InlineMedia(mime_type="image/png", data=sample_png_bytes)],
        )

        assert text == "SCANNED TEXT"
        parts = recorder.payload()["contents"][0]["parts"]
        assert parts[1]["inlineData"]["mimeType"] == "image/png"
        assert base64.b64decode(parts[1]["inlineData"]["data"]) == sample_png_bytes
        assert "systemInstruction" not in recorder.payload()
        assert "responseMimeType" not in recorder.payload()["generationConfig"]

    async def test_no_candidates(self, tokens):
        recorder = _Recorder(httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}))
        with pytest.raises(GenerationServiceError, match="no candidates"):
            await _generative_client(tokens, recorder).generate("x")

    async def test_auth_failure_propagates(self, tokens):
        tokens.get_token.side_effect = AIAuthError("Token exchange rejected: 401")
        recorder = _Recorder(_generation_response("unused"))

        with pytest.raises(AIAuthError):
            await _generative_client(tokens, recorder).generate("x")
        assert recorder.requests == []

    async def test_non_json_body_is_generation_error(self, tokens):
        recorder = _Recorder(*[httpx.Response(200, text="<html>502 Bad Gateway</html>") for _ in range(3)])

        with pytest.raises(GenerationServiceError, match="Malformed") as exc_info:
            await _generative_client(tokens, recorder).generate("x")
        assert exc_info.value.retryable is True
        assert len(recorder.requests) == 3

    @pytest.mark.parametrize("body", [
        ["not", "an", "object"],
        {"candidates": ["not-a-candidate"]},
    ])
    async def test_unexpected_json_shape(self, tokens, body):
        recorder = _Recorder(*[httpx.Response(200, json=body) for _ in range(3)])
        with pytest.raises(GenerationServiceError, match="Malformed"):
            await _generative_client(tokens, recorder).generate("x")
