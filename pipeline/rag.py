"""Top-level orchestration: guardrail routing, history window, retrieval pipeline."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from pydantic import BaseModel, Field

from context.guardrails import (
    NormalizedQuestion,
    build_guardrail_decision,
    normalize_question,
    route_question,
)
from context.window import build_history_window, build_intent_fallback
from core.cancellation import CancellationToken, ensure_token
from core.config import ChatConfigSnapshot
from core.models import (
    ChatMessage,
    CitationPayload,
    ContextWindowResult,
    EnhancedQuery,
    GuardrailDecision,
    HistoryWindowResult,
    RagK,
    RetrievalRequest,
)
from pipeline.runner import RagPipeline
from pipeline.stages import RagServices, RagState, build_stages
from pipeline.tracing import Tracer
from retrieval.retriever import resolve_rag_k

logger = logging.getLogger(__name__)

RETRIEVAL_CACHE_PREFIX = "rag-context:"


class RagResult(BaseModel):
    question: NormalizedQuestion
    decision: GuardrailDecision
    history: HistoryWindowResult
    context: ContextWindowResult
    citations: CitationPayload = Field(default_factory=CitationPayload)
    enhanced: EnhancedQuery | None = None
    k: RagK | None = None
    candidates_retrieved: int = 0
    filtered_out: int = 0
    enhancement: dict[str, Any] = Field(default_factory=dict)
    cache_hit: bool = False


def build_conversation(request: RetrievalRequest) -> list[ChatMessage]:
    """Prior turns plus the current question as the latest user turn."""
    turns = list(request.history)
    if turns and turns[-1].role == "user" and turns[-1].content.strip() == request.question.strip():
        return turns
    return [*turns, ChatMessage(role="user", content=request.question)]


def retrieval_cache_key(request: RetrievalRequest, snapshot: ChatConfigSnapshot) -> str:
    """Key covering every input that shapes the context block (history excluded)."""
    payload = {
        "question": request.question,
        "provider": request.provider,
        "model": request.model,
        "candidate_k": request.candidate_k,
        "flags": request.flags.model_dump(),
        "snapshot": snapshot.model_dump(mode="json"),
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{RETRIEVAL_CACHE_PREFIX}{digest}"


def run_rag(
    request: RetrievalRequest,
    services: RagServices,
    snapshot: ChatConfigSnapshot | None = None,
    cancel: CancellationToken | None = None,
    tracer: Tracer | None = None,
) -> RagResult:
    """Turn a question into a budgeted, citable context.

    Args:
        request: Question, prior turns, model selection and feature flags
        services: Generator, retriever and optional reranker/cache/token counter
        snapshot: Configuration for this run (read from settings when omitted)
        cancel: Caller-owned cancellation token
        tracer: Span emitter; no spans are emitted when omitted

    Returns:
        RagResult with context block, citations, history window and guardrail decision

    Raises:
        RetrievalError: Embedding or vector search failed
        PipelineCancelled: The caller cancelled the run
    """
    snapshot = snapshot or ChatConfigSnapshot.from_settings()
    token = ensure_token(cancel)
    token.raise_if_cancelled("guardrails")

    conversation = build_conversation(request)
    normalized = normalize_question(request.question)
    routed = route_question(normalized, conversation, snapshot.guardrails)
    history = build_history_window(conversation, snapshot.guardrails, services.counter)
    enhancement_defaults = EnhancedQuery.build(request.question).enhancement_summary(request.flags)

    if routed.intent != "knowledge":
        logger.info("Skipping retrieval for %s intent (%s)", routed.intent, routed.reason)
        context = build_intent_fallback(routed.intent, snapshot.guardrails)
        return RagResult(
            question=normalized,
            decision=build_guardrail_decision(routed, context),
            history=history,
            context=context,
            enhancement=enhancement_defaults,
        )

    k = resolve_rag_k(snapshot, request.candidate_k, request.flags.ranker_mode)

    cache = services.cache if snapshot.retrieval_cache_ttl > 0 else None
    cache_key = retrieval_cache_key(request, snapshot) if cache is not None else None
    if cache is not None:
        cached = cache.get(cache_key)
        if cached is not None:
            token.raise_if_cancelled("retrieve")
            logger.info("Retrieval cache hit")
            context = cached["context"].model_copy(deep=True)
            return RagResult(
                question=normalized,
                decision=build_guardrail_decision(routed, context),
                history=history,
                context=context,
                citations=cached["citations"].model_copy(deep=True),
                enhanced=cached["enhanced"].model_copy(deep=True),
                k=k,
                candidates_retrieved=cached["candidates_retrieved"],
                filtered_out=cached["filtered_out"],
                enhancement=dict(cached["enhancement"]),
                cache_hit=True,
            )

    pipeline = RagPipeline(build_stages(), tracer)
    state = pipeline.run(
        RagState(request=request, snapshot=snapshot, services=services, cancel=token, k=k)
    )

    context = state.context or ContextWindowResult()
    citations = state.citations or CitationPayload()
    enhanced = state.enhanced or EnhancedQuery.build(request.question)
    result = RagResult(
        question=normalized,
        decision=build_guardrail_decision(routed, context),
        history=history,
        context=context,
        citations=citations,
        enhanced=enhanced,
        k=k,
        candidates_retrieved=state.retrieval.candidates_retrieved if state.retrieval else 0,
        filtered_out=state.retrieval.filtered_out if state.retrieval else 0,
        enhancement=enhanced.enhancement_summary(request.flags),
    )

    if cache is not None:
        cache.set(
            cache_key,
            {
                "context": result.context.model_copy(deep=True),
                "citations": result.citations.model_copy(deep=True),
                "enhanced": result.enhanced.model_copy(deep=True),
                "candidates_retrieved": result.candidates_retrieved,
                "filtered_out": result.filtered_out,
                "enhancement": dict(result.enhancement),
            },
            ttl=snapshot.retrieval_cache_ttl,
        )
    return result
