"""
Named-Entity Extraction  —  Windowed Generative NER
═══════════════════════════════════════════════════

Flow:
  full text
    → windows (entity_window_size chars, entity_window_overlap overlap;
      same boundary-aware splitter as embedding chunks, larger scale)
    → one generative call per window, bounded concurrency
        system instruction : fixed taxonomy PERSON / ORG / DATE / LOCATION / LEGAL_TERM
        output             : JSON {"entities": [{"text": ..., "type": ...}]}
    → parse_structured_entities() per reply
    → dedupe by (text.lower(), type), first occurrence wins

A failed window (service error, timeout, unparseable reply) is logged and
recorded; the remaining windows still contribute entities.

The parser is the only place that turns model text into entities. Models
sometimes wrap JSON in Markdown fences or prose, so it tries strict JSON
first and then a pattern match for an embedded object or array before
raising StructuredOutputParseError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ValidationError, field_validator

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import (
    AIServiceError,
    EntityServiceError,
    FailureRecord,
    StructuredOutputParseError,
)
from casefile_ingest.llm.base import GenerativeClient
from casefile_ingest.processing.chunking import chunk_text

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    PERSON     = "PERSON"
    ORG        = "ORG"
    DATE       = "DATE"
    LOCATION   = "LOCATION"
    LEGAL_TERM = "LEGAL_TERM"


# Labels models commonly emit instead of the canonical ones
_TYPE_ALIASES: dict[str, str] = {
    "ORGANIZATION": "ORG",
    "ORGANISATION": "ORG",
    "COMPANY":      "ORG",
    "LOC":          "LOCATION",
    "GPE":          "LOCATION",
    "PLACE":        "LOCATION",
    "PER":          "PERSON",
    "PEOPLE":       "PERSON",
    "LEGAL TERM":   "LEGAL_TERM",
    "LEGAL-TERM":   "LEGAL_TERM",
    "LEGALTERM":    "LEGAL_TERM",
}

NER_SYSTEM_INSTRUCTION = (
    "You are a legal document analyst performing named entity recognition. "
    "Identify entities of exactly these types:\n"
    "  PERSON     - names of people\n"
    "  ORG        - companies, agencies, courts, firms and other organizations\n"
    "  DATE       - specific dates and date ranges\n"
    "  LOCATION   - addresses, cities, countries and other places\n"
    "  LEGAL_TERM - statutes, case citations, doctrines and legal terms of art\n"
    "Return each entity once, using the text exactly as it appears. "
    'Respond with JSON only: {"entities": [{"text": "...", "type": "PERSON"}]}'
)

NER_PROMPT_TEMPLATE = (
    "Extract the named entities from the following document text.\n\n"
    "TEXT:\n{text}"
)

ENTITY_RESPONSE_SCHEMA: dict = {
    "type": "OBJECT",
    "properties": {
        "entities": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "text": {"type": "STRING"},
                    "type": {"type": "STRING", "enum": [t.value for t in EntityType]},
                },
                "required": ["text", "type"],
            },
        },
    },
    "required": ["entities"],
}

_FENCE_RE  = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_RE  = re.compile(r"\[.*\]", re.DOTALL)


# ---------------------------------------------------------------------------
# Parsed entity
# ---------------------------------------------------------------------------

class ExtractedEntity(BaseModel):
    text: str
    type: EntityType

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        value = " ".join(value.split())
        if not value:
            raise ValueError("entity text is blank")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if isinstance(value, str):
            label = value.strip().upper()
            return _TYPE_ALIASES.get(label, label)
        return value

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return self.text.lower(), self.type.value


# ---------------------------------------------------------------------------
# Structured output parser
# ---------------------------------------------------------------------------

def _load_json(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    for pattern in (_OBJECT_RE, _ARRAY_RE):
        match = pattern.search(raw)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
    raise StructuredOutputParseError(f"No JSON found in model output: {raw[:120]!r}")


def parse_structured_entities(raw_text: str) -> list[ExtractedEntity]:
    """
    Turn a generative model reply into entities.

    Accepts {"entities": [...]} or a bare [...] list, optionally wrapped in
    Markdown fences or surrounded by prose. Items with unknown types or blank
    text are dropped; an empty list is a valid result.

    Raises:
        StructuredOutputParseError  no JSON could be recovered, or the JSON
                                    holds no entity list
    """
    if raw_text is None or not raw_text.strip():
        raise StructuredOutputParseError("Model output is empty")

    payload = _load_json(_FENCE_RE.sub("", raw_text.strip()))

    if isinstance(payload, dict):
        items = payload.get("entities")
    else:
        items = payload
    if not isinstance(items, list):
        raise StructuredOutputParseError("Model output has no 'entities' array")

    entities: list[ExtractedEntity] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            entities.append(ExtractedEntity.model_validate(item))
        except ValidationError:
            logger.debug("Entity dropped | item=%s", item)
    return entities


def dedupe_entities(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Keep the first entity per (lowercased text, type), preserving order."""
    seen: set[tuple[str, str]] = set()
    unique: list[ExtractedEntity] = []
    for entity in entities:
        if entity.dedupe_key in seen:
            continue
        seen.add(entity.dedupe_key)
        unique.append(entity)
    return unique


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

@dataclass
class EntityExtractionResult:
    entities:       list[ExtractedEntity]
    windows_total:  int
    failures:       list[FailureRecord] = field(default_factory=list)

    @property
    def windows_failed(self) -> int:
        return len(self.failures)


class EntityExtractor:

    def __init__(
        self,
        client:          GenerativeClient,
        *,
        window_size:     int | None = None,
        window_overlap:  int | None = None,
        concurrency:     int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._client         = client
        self._window_size    = window_size or settings.entity_window_size
        self._window_overlap = settings.entity_window_overlap if window_overlap is None else window_overlap
        self._concurrency    = concurrency or settings.entity_concurrency
        self._timeout        = timeout_seconds or settings.ai_timeout_seconds * (settings.ai_max_retries + 1)

    async def _extract_window(self, text: str) -> list[ExtractedEntity]:
        raw = await asyncio.wait_for(
            self._client.generate(
                NER_PROMPT_TEMPLATE.format(text=text),
                system_instruction=NER_SYSTEM_INSTRUCTION,
                temperature=0.0,
                json_output=True,
                response_schema=ENTITY_RESPONSE_SCHEMA,
            ),
            timeout=self._timeout,
        )
        return parse_structured_entities(raw)

    async def extract_entities(self, text: str) -> EntityExtractionResult:
        windows = chunk_text(text, self._window_size, self._window_overlap)
        if not windows:
            return EntityExtractionResult(entities=[], windows_total=0)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _run(window_text: str) -> list[ExtractedEntity]:
            async with semaphore:
                try:
                    return await self._extract_window(window_text)
                except (AIServiceError, StructuredOutputParseError) as exc:
                    raise EntityServiceError(str(exc)) from exc
                except asyncio.TimeoutError as exc:
                    raise EntityServiceError(
                        f"entity extraction timed out after {self._timeout:.0f}s"
                    ) from exc

        outcomes = await asyncio.gather(*(_run(w.text) for w in windows), return_exceptions=True)

        collected: list[ExtractedEntity] = []
        failures:  list[FailureRecord] = []
        for window, outcome in zip(windows, outcomes):
            if isinstance(outcome, EntityServiceError):
                logger.warning("Entity window failed | window=%d error=%s", window.index, outcome.message)
                failures.append(FailureRecord(
                    kind=outcome.kind,
                    unit=f"window:{window.index}",
                    message=outcome.message,
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                collected.extend(outcome)

        entities = dedupe_entities(collected)
        logger.info(
            "Entity extraction done | windows=%d failed=%d raw=%d unique=%d",
            len(windows), len(failures), len(collected), len(entities),
        )
        return EntityExtractionResult(entities=entities, windows_total=len(windows), failures=failures)
