"""
AI Client Factory

Selects the provider (Vertex AI | OpenAI) based on config. The pipeline only
sees EmbeddingClient / GenerativeClient, never the concrete classes.
"""

from __future__ import annotations

from functools import lru_cache

from casefile_ingest.core.config import Settings, settings as default_settings
from casefile_ingest.llm.base import EmbeddingClient, GenerativeClient


@lru_cache(maxsize=1)
def _vertex_tokens(credentials: str):
    # One provider per process so the token cache spans calls
    from casefile_ingest.llm.google_auth import ServiceAccountInfo, ServiceAccountTokenProvider
    return ServiceAccountTokenProvider(ServiceAccountInfo.from_json(credentials))


def _client_options(cfg: Settings) -> dict:
    return {
        "timeout":     cfg.ai_timeout_seconds,
        "max_retries": cfg.ai_max_retries,
        "base_delay":  cfg.ai_retry_base_delay,
        "max_delay":   cfg.ai_retry_max_delay,
    }


def _project_id(cfg: Settings) -> str:
    if cfg.google_cloud_project_id:
        return cfg.google_cloud_project_id
    return _vertex_tokens(cfg.google_service_account_json).project_id


def get_embedding_client(cfg: Settings | None = None) -> EmbeddingClient:
    cfg = cfg or default_settings
    provider = cfg.ai_provider.lower()

    if provider == "vertex":
        from casefile_ingest.llm.vertex import VertexEmbeddingClient
        return VertexEmbeddingClient(
            _vertex_tokens(cfg.google_service_account_json),
            _project_id(cfg),
            cfg.google_cloud_location,
            cfg.google_embedding_model,
            dimensions=cfg.embedding_dimensions,
            **_client_options(cfg),
        )

    if provider == "openai":
        from casefile_ingest.llm.openai_client import OpenAIEmbeddingClient
        return OpenAIEmbeddingClient(
            cfg.openai_embedding_model,
            dimensions=cfg.embedding_dimensions,
            api_key=cfg.openai_api_key,
            **_client_options(cfg),
        )

    raise ValueError(f"Unknown AI provider: '{provider}'. Valid options: 'vertex', 'openai'")


def get_generative_client(cfg: Settings | None = None) -> GenerativeClient:
    cfg = cfg or default_settings
    provider = cfg.ai_provider.lower()

    if provider == "vertex":
        from casefile_ingest.llm.vertex import VertexGenerativeClient
        return VertexGenerativeClient(
            _vertex_tokens(cfg.google_service_account_json),
            _project_id(cfg),
            cfg.google_cloud_location,
            cfg.google_generative_model,
            max_output_tokens=cfg.llm_max_output_tokens,
            **_client_options(cfg),
        )

    if provider == "openai":
        from casefile_ingest.llm.openai_client import OpenAIGenerativeClient
        return OpenAIGenerativeClient(
            cfg.openai_generative_model,
            max_output_tokens=cfg.llm_max_output_tokens,
            api_key=cfg.openai_api_key,
            **_client_options(cfg),
        )

    raise ValueError(f"Unknown AI provider: '{provider}'. Valid options: 'vertex', 'openai'")
