"""RAG retrieval configuration via Pydantic settings.

`Settings` reads provider credentials and numeric defaults from the
environment (or `.env`). Each request runs against an immutable
`ChatConfigSnapshot` derived from it; out-of-range values are clamped to safe
bounds and logged instead of raising.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

ReverseRagMode = Literal["precision", "recall"]
RankerMode = Literal["none", "mmr", "remote-rerank"]

DEFAULT_REVERSE_RAG_MODE: ReverseRagMode = "precision"
DEFAULT_RANKER_MODE: RankerMode = "none"

DEFAULT_CHITCHAT_KEYWORDS = (
    "hello,hi,how are you,whats up,what is up,tell me a joke,thank you,"
    "thanks,lol,haha,good morning,good evening"
)
DEFAULT_CHITCHAT_FALLBACK = (
    "This is a light-weight chit-chat turn. Keep the response concise, warm, "
    "and avoid citing the knowledge base."
)
DEFAULT_COMMAND_FALLBACK = (
    "The user is asking for an action/command. You must politely decline to "
    "execute actions and instead explain what is possible."
)


class Settings(BaseSettings):
    # OpenAI
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    llm_model: str = "gpt-4o-mini"
    embedding_dimensions: int = 1536
    request_timeout: float = 30.0

    # Voyage (remote rerank)
    voyage_api_key: str = ""
    rerank_model: str = "rerank-2.5"

    # Neo4j
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "temporal_kb_2026"

    # Public site used when rewriting Notion URLs
    public_site_url: str = "https://example.com"

    # Retrieval widths
    rag_top_k: int = 5
    rag_retrieve_floor: int = 5
    rag_rerank_k: int | None = None
    similarity_threshold: float = 0.78

    # Context / history budgets
    context_token_budget: int = 1200
    context_clip_tokens: int = 320
    history_token_budget: int = 900
    max_chunks_per_doc: int = 2
    mmr_lite_enabled: bool = False
    mmr_lite_lambda: float = 0.7

    # History summarization
    summary_enabled: bool = True
    summary_trigger_tokens: int = 400
    summary_max_turns: int = 6
    summary_max_chars: int = 600

    # Guardrails
    chitchat_keywords: str = DEFAULT_CHITCHAT_KEYWORDS
    fallback_chitchat: str = DEFAULT_CHITCHAT_FALLBACK
    fallback_command: str = DEFAULT_COMMAND_FALLBACK

    # Metadata weighting (JSON objects, e.g. '{"photo": 0.2}')
    doc_type_weights: str = ""
    persona_type_weights: str = ""
    weight_min: float = 0.1
    weight_max: float = 3.0
    allowed_doc_types: str = ""
    require_metadata: bool = False

    # Feature toggles
    reverse_rag_enabled: bool = False
    reverse_rag_mode: str = DEFAULT_REVERSE_RAG_MODE
    hyde_enabled: bool = False
    ranker_mode: str = DEFAULT_RANKER_MODE
    mmr_lambda: float = 0.5

    # Caching (seconds)
    metadata_cache_ttl: float = 300.0
    canonical_cache_ttl: float = 600.0
    retrieval_cache_ttl: float = 0.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()


def _clamp(name: str, value: float, low: float | None = None, high: float | None = None) -> float:
    clamped = value
    if low is not None and clamped < low:
        clamped = low
    if high is not None and clamped > high:
        clamped = high
    if clamped != value:
        logger.warning("Config %s=%s out of range, clamped to %s", name, value, clamped)
    return clamped


def parse_boolean_flag(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return fallback


def parse_reverse_rag_mode(value: Any, fallback: ReverseRagMode = DEFAULT_REVERSE_RAG_MODE) -> ReverseRagMode:
    if not isinstance(value, str):
        return fallback
    normalized = value.strip().lower()
    if normalized in ("precision", "recall"):
        return normalized  # type: ignore[return-value]
    return fallback


def parse_ranker_mode(value: Any, fallback: RankerMode = DEFAULT_RANKER_MODE) -> RankerMode:
    """Map free-form ranker names onto a supported mode; unknown values fall back."""
    if not isinstance(value, str):
        return fallback
    normalized = value.strip().lower()
    if normalized == "mmr":
        return "mmr"
    if normalized in ("remote-rerank", "rerank", "cohere-rerank", "cohererank"):
        return "remote-rerank"
    if normalized == "none":
        return "none"
    return fallback


def parse_keyword_list(raw: str | list[str] | None) -> list[str]:
    """Split a comma/newline separated keyword list into unique lowercase entries."""
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else raw.replace("\n", ",").split(",")
    keywords: list[str] = []
    for item in items:
        keyword = " ".join(str(item).split()).lower()
        if keyword and keyword not in keywords:
            keywords.append(keyword)
    return keywords


def parse_weight_table(raw: str | dict | None, name: str = "weights") -> dict[str, float]:
    """Parse a weight override table, dropping malformed entries with a warning."""
    if not raw:
        return {}
    table: Any = raw
    if isinstance(raw, str):
        try:
            table = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Config %s is not valid JSON, ignoring: %r", name, raw)
            return {}
    if not isinstance(table, dict):
        logger.warning("Config %s must be an object, ignoring: %r", name, table)
        return {}

    weights: dict[str, float] = {}
    for key, value in table.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            logger.warning("Config %s[%s]=%r is not a finite number, ignoring", name, key, value)
            continue
        weights[str(key).strip().lower()] = float(value)
    return weights


class SummaryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    trigger_tokens: int = 400
    max_turns: int = 6
    max_chars: int = 600

    @field_validator("trigger_tokens")
    @classmethod
    def _trigger(cls, v: int) -> int:
        return int(_clamp("summary.trigger_tokens", v, low=0))

    @field_validator("max_turns")
    @classmethod
    def _turns(cls, v: int) -> int:
        return int(_clamp("summary.max_turns", v, low=1))

    @field_validator("max_chars")
    @classmethod
    def _chars(cls, v: int) -> int:
        return int(_clamp("summary.max_chars", v, low=64))


class GuardrailConfig(BaseModel):
    """Numeric limits and keyword lists shared by guardrails and the context window."""

    model_config = ConfigDict(frozen=True)

    similarity_threshold: float = 0.78
    rag_top_k: int = 5
    context_token_budget: int = 1200
    context_clip_tokens: int = 320
    history_token_budget: int = 900
    max_chunks_per_doc: int = 2
    mmr_lite_enabled: bool = False
    mmr_lite_lambda: float = 0.7
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    chitchat_keywords: tuple[str, ...] = tuple(parse_keyword_list(DEFAULT_CHITCHAT_KEYWORDS))
    fallback_chitchat: str = DEFAULT_CHITCHAT_FALLBACK
    fallback_command: str = DEFAULT_COMMAND_FALLBACK

    @field_validator("similarity_threshold", "mmr_lite_lambda")
    @classmethod
    def _unit_interval(cls, v: float, info) -> float:
        return _clamp(info.field_name, v, low=0.0, high=1.0)

    @field_validator("rag_top_k", "max_chunks_per_doc")
    @classmethod
    def _at_least_one(cls, v: int, info) -> int:
        return int(_clamp(info.field_name, v, low=1))

    @field_validator("context_token_budget", "history_token_budget")
    @classmethod
    def _non_negative(cls, v: int, info) -> int:
        return int(_clamp(info.field_name, v, low=0))

    @field_validator("context_clip_tokens")
    @classmethod
    def _clip(cls, v: int) -> int:
        return int(_clamp("context_clip_tokens", v, low=16))


class RankingConfig(BaseModel):
    """Metadata weight overrides, clamp range and visibility rules."""

    model_config = ConfigDict(frozen=True)

    doc_type_weights: dict[str, float] = Field(default_factory=dict)
    persona_type_weights: dict[str, float] = Field(default_factory=dict)
    weight_min: float = 0.1
    weight_max: float = 3.0
    allowed_doc_types: tuple[str, ...] = ()
    require_metadata: bool = False

    @field_validator("doc_type_weights", "persona_type_weights", mode="before")
    @classmethod
    def _tables(cls, v: Any, info) -> dict[str, float]:
        return parse_weight_table(v, info.field_name)

    @field_validator("weight_min")
    @classmethod
    def _min(cls, v: float) -> float:
        return _clamp("weight_min", v, low=0.0)

    @field_validator("weight_max")
    @classmethod
    def _max(cls, v: float, info) -> float:
        low = info.data.get("weight_min", 0.0)
        return _clamp("weight_max", v, low=low)


class ChatConfigSnapshot(BaseModel):
    """Immutable configuration snapshot for one pipeline run."""

    model_config = ConfigDict(frozen=True)

    llm_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    retrieve_floor: int = 5
    rerank_k: int | None = None
    mmr_lambda: float = 0.5
    public_site_url: str = "https://example.com"
    retrieval_cache_ttl: float = 0.0
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)

    @field_validator("retrieve_floor")
    @classmethod
    def _floor(cls, v: int) -> int:
        return int(_clamp("retrieve_floor", v, low=1))

    @field_validator("rerank_k")
    @classmethod
    def _rerank(cls, v: int | None) -> int | None:
        if v is None:
            return None
        return int(_clamp("rerank_k", v, low=1))

    @field_validator("mmr_lambda")
    @classmethod
    def _lambda(cls, v: float) -> float:
        return _clamp("mmr_lambda", v, low=0.0, high=1.0)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> ChatConfigSnapshot:
        s = source or settings
        return cls(
            llm_model=s.llm_model,
            embedding_model=s.embedding_model,
            retrieve_floor=s.rag_retrieve_floor,
            rerank_k=s.rag_rerank_k,
            mmr_lambda=s.mmr_lambda,
            public_site_url=s.public_site_url,
            retrieval_cache_ttl=s.retrieval_cache_ttl,
            guardrails=GuardrailConfig(
                similarity_threshold=s.similarity_threshold,
                rag_top_k=s.rag_top_k,
                context_token_budget=s.context_token_budget,
                context_clip_tokens=s.context_clip_tokens,
                history_token_budget=s.history_token_budget,
                max_chunks_per_doc=s.max_chunks_per_doc,
                mmr_lite_enabled=s.mmr_lite_enabled,
                mmr_lite_lambda=s.mmr_lite_lambda,
                summary=SummaryConfig(
                    enabled=s.summary_enabled,
                    trigger_tokens=s.summary_trigger_tokens,
                    max_turns=s.summary_max_turns,
                    max_chars=s.summary_max_chars,
                ),
                chitchat_keywords=tuple(parse_keyword_list(s.chitchat_keywords)),
                fallback_chitchat=s.fallback_chitchat.strip() or DEFAULT_CHITCHAT_FALLBACK,
                fallback_command=s.fallback_command.strip() or DEFAULT_COMMAND_FALLBACK,
            ),
            ranking=RankingConfig(
                doc_type_weights=s.doc_type_weights,
                persona_type_weights=s.persona_type_weights,
                weight_min=s.weight_min,
                weight_max=s.weight_max,
                allowed_doc_types=tuple(parse_keyword_list(s.allowed_doc_types)),
                require_metadata=s.require_metadata,
            ),
        )
