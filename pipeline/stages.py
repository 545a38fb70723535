"""Pipeline state and the six retrieval stages.

Each stage is a plain `RagState -> RagState` function returning a new state
via `dataclasses.replace`, so it can be unit-tested on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from context.citations import build_citation_payload
from context.window import build_context_window
from core.models import (
    CitationPayload,
    ContextWindowResult,
    EnhancedQuery,
    RagK,
    RankedCandidate,
    RetrievalRequest,
)
from pipeline.runner import Stage
from retrieval.query_expander import generate_hyde_document, rewrite_query
from retrieval.reranker import apply_ranker
from retrieval.retriever import RetrievalOutcome

if TYPE_CHECKING:
    from context.tokens import TokenCounter
    from core.cache import Cache
    from core.cancellation import CancellationToken
    from core.config import ChatConfigSnapshot
    from retrieval.providers import Embedder, TextGenerator
    from retrieval.reranker import RemoteReranker
    from retrieval.retriever import WeightedRetriever

logger = logging.getLogger(__name__)


@dataclass
class RagServices:
    """External collaborators injected into a run."""

    generator: TextGenerator
    retriever: WeightedRetriever
    embedder: Embedder | None = None
    reranker: RemoteReranker | None = None
    cache: Cache | None = None
    counter: TokenCounter | None = None


@dataclass
class RagState:
    """State passed through the pipeline stages."""

    request: RetrievalRequest
    snapshot: ChatConfigSnapshot
    services: RagServices
    cancel: CancellationToken
    k: RagK
    rewritten_query: str = ""
    hypothetical_document: str | None = None
    enhanced: EnhancedQuery | None = None
    retrieval: RetrievalOutcome | None = None
    ranked: list[RankedCandidate] = field(default_factory=list)
    context: ContextWindowResult | None = None
    citations: CitationPayload | None = None


def reverse_rag_stage(state: RagState) -> RagState:
    flags = state.request.flags
    rewritten = rewrite_query(
        state.request.question,
        enabled=flags.reverse_rag_enabled,
        generator=state.services.generator,
        model=state.request.model or None,
        mode=flags.reverse_rag_mode,
        cancel=state.cancel,
    )
    return replace(state, rewritten_query=rewritten)


def hyde_stage(state: RagState) -> RagState:
    rewritten = state.rewritten_query or state.request.question
    hyde = generate_hyde_document(
        rewritten,
        enabled=state.request.flags.hyde_enabled,
        generator=state.services.generator,
        model=state.request.model or None,
        cancel=state.cancel,
    )
    enhanced = EnhancedQuery.build(state.request.question, rewritten, hyde)
    return replace(state, hypothetical_document=hyde, enhanced=enhanced)


def retrieve_stage(state: RagState) -> RagState:
    enhanced = state.enhanced or EnhancedQuery.build(state.request.question)
    outcome = state.services.retriever.retrieve(enhanced, state.k, state.snapshot, cancel=state.cancel)
    return replace(state, enhanced=enhanced, retrieval=outcome)


def rank_stage(state: RagState) -> RagState:
    outcome = state.retrieval or RetrievalOutcome()
    enhanced = state.enhanced or EnhancedQuery.build(state.request.question)
    ranked = apply_ranker(
        outcome.enriched,
        mode=state.request.flags.ranker_mode,
        max_results=state.k.rank_width,
        query=enhanced.rewritten_query,
        query_embedding=outcome.query_embedding,
        embedder=state.services.embedder,
        reranker=state.services.reranker,
        mmr_lambda=state.snapshot.mmr_lambda,
        cancel=state.cancel,
    )
    return replace(state, ranked=ranked)


def context_window_stage(state: RagState) -> RagState:
    context = build_context_window(
        state.ranked,
        state.snapshot.guardrails,
        final_k=state.k.final_k,
        counter=state.services.counter,
    )
    return replace(state, context=context)


def citations_stage(state: RagState) -> RagState:
    included = state.context.included if state.context else []
    payload = build_citation_payload(included, top_k_chunks=len(included))
    logger.info("Citations: %s", payload.meta.message)
    return replace(state, citations=payload)


def build_stages() -> list[Stage[RagState]]:
    """The default stage order with the span payload each stage reports."""
    return [
        Stage(
            "reverse_rag",
            reverse_rag_stage,
            trace_input=lambda s: {
                "question": s.request.question,
                "enabled": s.request.flags.reverse_rag_enabled,
                "mode": s.request.flags.reverse_rag_mode,
            },
            trace_output=lambda s: {"rewritten_query": s.rewritten_query},
        ),
        Stage(
            "hyde",
            hyde_stage,
            trace_input=lambda s: {
                "query": s.rewritten_query,
                "enabled": s.request.flags.hyde_enabled,
            },
            trace_output=lambda s: {
                "hypothetical_document": s.hypothetical_document,
                "embedding_target": s.enhanced.embedding_target if s.enhanced else None,
            },
        ),
        Stage(
            "retrieve",
            retrieve_stage,
            trace_input=lambda s: {"retrieve_k": s.k.retrieve_k},
            trace_output=lambda s: {
                "candidates_retrieved": s.retrieval.candidates_retrieved if s.retrieval else 0,
                "enriched": len(s.retrieval.enriched) if s.retrieval else 0,
                "filtered_out": s.retrieval.filtered_out if s.retrieval else 0,
            },
        ),
        Stage(
            "rank",
            rank_stage,
            trace_input=lambda s: {
                "mode": s.request.flags.ranker_mode,
                "rerank_k": s.k.rerank_k,
                "final_k": s.k.final_k,
            },
            trace_output=lambda s: {"ranked": len(s.ranked)},
        ),
        Stage(
            "context_window",
            context_window_stage,
            trace_input=lambda s: {
                "candidates": len(s.ranked),
                "token_budget": s.snapshot.guardrails.context_token_budget,
            },
            trace_output=lambda s: {
                "included": len(s.context.included) if s.context else 0,
                "dropped": s.context.dropped if s.context else 0,
                "total_tokens": s.context.total_tokens if s.context else 0,
                "insufficient": s.context.insufficient if s.context else True,
            },
        ),
        Stage(
            "citations",
            citations_stage,
            trace_output=lambda s: {
                "unique_docs": s.citations.meta.unique_docs if s.citations else 0,
                "message": s.citations.meta.message if s.citations else None,
            },
        ),
    ]
