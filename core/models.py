"""Data models for the RAG retrieval pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.config import (
    DEFAULT_RANKER_MODE,
    DEFAULT_REVERSE_RAG_MODE,
    RankerMode,
    ReverseRagMode,
    parse_ranker_mode,
    parse_reverse_rag_mode,
)

Role = Literal["user", "assistant", "system"]
Intent = Literal["knowledge", "chitchat", "command"]


class ChatMessage(BaseModel):
    """One conversation turn."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class FeatureFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    reverse_rag_enabled: bool = False
    reverse_rag_mode: ReverseRagMode = DEFAULT_REVERSE_RAG_MODE
    hyde_enabled: bool = False
    ranker_mode: RankerMode = DEFAULT_RANKER_MODE

    @field_validator("ranker_mode", mode="before")
    @classmethod
    def _ranker(cls, v: Any) -> RankerMode:
        return parse_ranker_mode(v)

    @field_validator("reverse_rag_mode", mode="before")
    @classmethod
    def _reverse(cls, v: Any) -> ReverseRagMode:
        return parse_reverse_rag_mode(v)


class RetrievalRequest(BaseModel):
    """Input to one pipeline run. Immutable for the lifetime of the run."""

    model_config = ConfigDict(frozen=True)

    question: str
    history: tuple[ChatMessage, ...] = ()
    provider: str = "openai"
    model: str = ""
    flags: FeatureFlags = Field(default_factory=FeatureFlags)
    candidate_k: int = 1

    @field_validator("candidate_k")
    @classmethod
    def _candidate_k(cls, v: int) -> int:
        return max(1, v)


class EnhancedQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_question: str
    rewritten_query: str
    hypothetical_document: str | None = None
    embedding_target: str

    @classmethod
    def build(
        cls,
        original_question: str,
        rewritten_query: str | None = None,
        hypothetical_document: str | None = None,
    ) -> EnhancedQuery:
        rewritten = rewritten_query or original_question
        target = hypothetical_document or rewritten or original_question
        return cls(
            original_question=original_question,
            rewritten_query=rewritten,
            hypothetical_document=hypothetical_document,
            embedding_target=target,
        )

    def enhancement_summary(self, flags: FeatureFlags) -> dict:
        return {
            "reverse_rag": {
                "enabled": flags.reverse_rag_enabled,
                "mode": flags.reverse_rag_mode,
                "original": self.original_question,
                "rewritten": self.rewritten_query,
            },
            "hyde": {
                "enabled": flags.hyde_enabled,
                "generated": self.hypothetical_document,
            },
            "ranker": {"mode": flags.ranker_mode},
        }


class DocumentMetadata(BaseModel):
    """Canonical document metadata, schema version 1."""

    model_config = ConfigDict(frozen=True)

    schema_version: int = 1
    doc_id: str | None = None
    title: str | None = None
    source_url: str | None = None
    source_type: str | None = None
    doc_type: str | None = None
    persona_type: str | None = None
    is_public: bool | None = None
    tags: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)

    def merged_with(self, other: DocumentMetadata | None) -> DocumentMetadata:
        """Return a copy where non-empty fields of `other` win."""
        if other is None:
            return self
        updates = {
            name: value
            for name, value in other.model_dump(exclude={"schema_version", "extra"}).items()
            if value not in (None, ())
        }
        extra = {**self.extra, **other.extra}
        return self.model_copy(update={**updates, "extra": extra})


class Candidate(BaseModel):
    """A chunk returned by the vector index."""

    chunk_text: str
    raw_similarity: float = 0.0
    document_id: str | None = None
    raw_metadata: dict[str, Any] = Field(default_factory=dict)
    retrieval_index: int = 0
    embedding: list[float] = Field(default_factory=list)


class EnrichedCandidate(Candidate):
    title: str | None = None
    source_url: str | None = None
    doc_type: str | None = None
    persona_type: str | None = None
    metadata: DocumentMetadata | None = None
    metadata_weight: float = 1.0
    final_score: float = 0.0


class RankedCandidate(EnrichedCandidate):
    rank: int = 0


class RagK(BaseModel):
    """Normalized retrieval widths: final_k <= rerank_k <= retrieve_k."""

    model_config = ConfigDict(frozen=True)

    retrieve_k: int
    rerank_k: int | None = None
    final_k: int

    @property
    def rank_width(self) -> int:
        return self.rerank_k if self.rerank_k is not None else self.final_k


class ContextItem(BaseModel):
    candidate: RankedCandidate
    pruned_text: str
    clipped: bool = False
    token_count: int = 0


class SelectionDiagnostics(BaseModel):
    input_count: int = 0
    unique_before_dedupe: int = 0
    unique_after_dedupe: int = 0
    dropped_by_dedupe: int = 0
    dropped_by_quota: int = 0
    dropped_by_budget: int = 0
    per_doc_quota: int = 0
    quota_total: int = 0
    quota_total_used: int = 0
    unique_docs: int = 0
    final_selected_count: int = 0
    mmr_lite: bool = False
    mmr_lambda: float | None = None


class ContextWindowResult(BaseModel):
    context_block: str = ""
    included: list[ContextItem] = Field(default_factory=list)
    trimmed: list[RankedCandidate] = Field(default_factory=list)
    total_tokens: int = 0
    insufficient: bool = True
    highest_score: float = 0.0
    selection: SelectionDiagnostics = Field(default_factory=SelectionDiagnostics)

    @property
    def dropped(self) -> int:
        return len(self.trimmed)


class HistoryWindowResult(BaseModel):
    included: list[ChatMessage] = Field(default_factory=list)
    trimmed: list[ChatMessage] = Field(default_factory=list)
    token_count: int = 0
    summary: str | None = None


class CitationChunkDetail(BaseModel):
    chunk_index: int
    snippet: str
    similarity: float
    weight: float
    final_score: float


class CitationDocScore(BaseModel):
    doc_id: str | None = None
    title: str | None = None
    url: str | None = None
    doc_type: str | None = None
    persona_type: str | None = None
    similarity_max: float = 0.0
    similarity_avg: float = 0.0
    weight: float = 1.0
    final_score: float = 0.0
    normalized_score: int = 0
    excerpt_count: int = 0
    chunk_indices: list[int] = Field(default_factory=list)
    chunks: list[CitationChunkDetail] = Field(default_factory=list)


class CitationMeta(BaseModel):
    top_k_chunks: int = 0
    unique_docs: int = 0
    message: str = "No citations were generated."


class CitationPayload(BaseModel):
    citations: list[CitationDocScore] = Field(default_factory=list)
    meta: CitationMeta = Field(default_factory=CitationMeta)


class GuardrailDecision(BaseModel):
    intent: Intent = "knowledge"
    confidence: float = 0.0
    reason: str = ""
    language: str = "unknown"
    included_count: int = 0
    dropped_count: int = 0
    highest_similarity: float = 0.0
    insufficient: bool = True
