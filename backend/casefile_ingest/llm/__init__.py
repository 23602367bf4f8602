"""
AI Client Package

Provider-agnostic access to the two AI capabilities the pipeline uses:
  - embeddings       (Vertex AI text-embedding-004 | OpenAI text-embedding-3-*)
  - generation / OCR (Vertex AI Gemini | OpenAI chat with image inputs)

Public API::

    from casefile_ingest.llm import get_embedding_client, get_generative_client

    embedder = get_embedding_client()
    vector   = await embedder.embed("The defendant filed a motion ...")
"""

from casefile_ingest.llm.base import EmbeddingClient, GenerativeClient, InlineMedia
from casefile_ingest.llm.factory import get_embedding_client, get_generative_client

__all__ = [
    "EmbeddingClient",
    "GenerativeClient",
    "InlineMedia",
    "get_embedding_client",
    "get_generative_client",
]
