"""Context window assembly: dedupe, quotas and token budgets.

Two budgets are enforced independently: retrieved evidence goes through
`build_context_window`, prior conversation turns through
`build_history_window`.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from context.tokens import TokenCounter, clip_text_to_tokens, estimate_message_tokens
from core.config import GuardrailConfig, SummaryConfig
from core.models import (
    ChatMessage,
    ContextItem,
    ContextWindowResult,
    HistoryWindowResult,
    Intent,
    RankedCandidate,
    SelectionDiagnostics,
)

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n---\n\n"
SUMMARY_MIN_LINE_CHARS = 32

_WORD = re.compile(r"\w+")


class DedupeResult(BaseModel):
    kept: list[RankedCandidate] = Field(default_factory=list)
    dropped_duplicates: list[RankedCandidate] = Field(default_factory=list)
    dropped_quota: list[RankedCandidate] = Field(default_factory=list)
    unique_before_dedupe: int = 0
    unique_after_dedupe: int = 0


def score_order_key(candidate: RankedCandidate) -> tuple:
    """Descending final score, ties broken by original retrieval order."""
    return (-candidate.final_score, candidate.retrieval_index, candidate.rank)


def document_key(candidate: RankedCandidate) -> str:
    if candidate.document_id:
        return candidate.document_id
    if candidate.source_url:
        return candidate.source_url.lower()
    return f"idx:{candidate.retrieval_index}"


def _chunk_key(candidate: RankedCandidate) -> str:
    return " ".join(candidate.chunk_text.split())


def dedupe_candidates(candidates: list[RankedCandidate], per_doc_quota: int) -> DedupeResult:
    """Drop repeated chunk text, then keep at most `per_doc_quota` excerpts per document.

    Input is walked in score order so the retained excerpts are the
    highest-scoring ones.
    """
    ordered = sorted(candidates, key=score_order_key)
    result = DedupeResult(unique_before_dedupe=len({_chunk_key(c) for c in ordered}))

    seen_chunks: set[str] = set()
    per_doc: dict[str, int] = {}
    for candidate in ordered:
        chunk_key = _chunk_key(candidate)
        if chunk_key in seen_chunks:
            result.dropped_duplicates.append(candidate)
            continue
        seen_chunks.add(chunk_key)

        doc_key = document_key(candidate)
        if per_doc.get(doc_key, 0) >= per_doc_quota:
            result.dropped_quota.append(candidate)
            continue
        per_doc[doc_key] = per_doc.get(doc_key, 0) + 1
        result.kept.append(candidate)

    result.unique_after_dedupe = len(seen_chunks)
    return result


def _word_set(text: str) -> frozenset[str]:
    return frozenset(word.lower() for word in _WORD.findall(text))


def _jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def select_mmr_lite(
    candidates: list[RankedCandidate], limit: int, mmr_lambda: float
) -> list[RankedCandidate]:
    """Pick `limit` candidates trading score against word-overlap with earlier picks."""
    if len(candidates) <= limit:
        return list(candidates)

    top = max((c.final_score for c in candidates), default=0.0)
    words = [_word_set(c.chunk_text) for c in candidates]
    selected: list[int] = []
    remaining = list(range(len(candidates)))
    while len(selected) < limit and remaining:
        best, best_score = remaining[0], float("-inf")
        for i in remaining:
            relevance = candidates[i].final_score / top if top > 0 else 0.0
            overlap = max((_jaccard(words[i], words[j]) for j in selected), default=0.0)
            score = mmr_lambda * relevance - (1 - mmr_lambda) * overlap
            if score > best_score:
                best, best_score = i, score
        selected.append(best)
        remaining.remove(best)
    return sorted((candidates[i] for i in selected), key=score_order_key)


def build_document_label(candidate: RankedCandidate) -> str:
    title = (candidate.title or "").strip() or None
    url = (candidate.source_url or "").strip() or None
    if title and url:
        return f"{title} ({url})"
    return title or url or ""


def render_context_block(items: list[ContextItem]) -> str:
    blocks = []
    for index, item in enumerate(items, start=1):
        header = " ".join(part for part in (f"({index})", build_document_label(item.candidate)) if part)
        body = item.pruned_text.strip()
        blocks.append("\n".join(part for part in (header, body) if part))
    return BLOCK_SEPARATOR.join(blocks)


def build_context_window(
    candidates: list[RankedCandidate],
    config: GuardrailConfig,
    final_k: int | None = None,
    counter: TokenCounter | None = None,
) -> ContextWindowResult:
    """Select the retrieved evidence that fits the context token budget.

    Args:
        candidates: Ranked candidates from the ranking stage
        config: Guardrail numeric limits (budget, clip ceiling, quotas, threshold)
        final_k: Upper bound on selected chunks (defaults to config.rag_top_k)
        counter: Exact token counter; characters / 4 when omitted

    Returns:
        ContextWindowResult with included items in descending final score order
    """
    quota_total = max(1, final_k if final_k is not None else config.rag_top_k)
    usable = [c for c in candidates if c.chunk_text and c.chunk_text.strip()]
    blank = [c for c in candidates if not (c.chunk_text and c.chunk_text.strip())]

    if not usable:
        return ContextWindowResult(
            trimmed=blank,
            insufficient=True,
            selection=SelectionDiagnostics(
                input_count=len(candidates),
                per_doc_quota=config.max_chunks_per_doc,
                quota_total=quota_total,
            ),
        )

    deduped = dedupe_candidates(usable, config.max_chunks_per_doc)

    if config.mmr_lite_enabled:
        selected = select_mmr_lite(deduped.kept, quota_total, config.mmr_lite_lambda)
    else:
        selected = deduped.kept[:quota_total]
    selected_ids = {id(c) for c in selected}
    over_quota = [c for c in deduped.kept if id(c) not in selected_ids]

    included: list[ContextItem] = []
    over_budget: list[RankedCandidate] = []
    tokens_used = 0
    for position, candidate in enumerate(selected):
        text, clipped, token_count = clip_text_to_tokens(
            candidate.chunk_text, config.context_clip_tokens, counter
        )
        if tokens_used + token_count > config.context_token_budget:
            over_budget = selected[position:]
            break
        tokens_used += token_count
        included.append(
            ContextItem(candidate=candidate, pruned_text=text, clipped=clipped, token_count=token_count)
        )

    trimmed = sorted(
        deduped.dropped_duplicates + deduped.dropped_quota + over_quota + over_budget,
        key=score_order_key,
    ) + blank

    highest_score = max(c.final_score for c in usable)
    insufficient = highest_score < config.similarity_threshold or not included
    selection = SelectionDiagnostics(
        input_count=len(candidates),
        unique_before_dedupe=deduped.unique_before_dedupe,
        unique_after_dedupe=deduped.unique_after_dedupe,
        dropped_by_dedupe=len(deduped.dropped_duplicates),
        dropped_by_quota=len(deduped.dropped_quota) + len(over_quota),
        dropped_by_budget=len(over_budget),
        per_doc_quota=config.max_chunks_per_doc,
        quota_total=quota_total,
        quota_total_used=len(selected),
        unique_docs=len({document_key(item.candidate) for item in included}),
        final_selected_count=len(included),
        mmr_lite=config.mmr_lite_enabled,
        mmr_lambda=config.mmr_lite_lambda if config.mmr_lite_enabled else None,
    )

    logger.debug(
        "Context window: %d included, %d trimmed, %d tokens (budget %d)",
        len(included),
        len(trimmed),
        tokens_used,
        config.context_token_budget,
    )
    return ContextWindowResult(
        context_block=render_context_block(included),
        included=included,
        trimmed=trimmed,
        total_tokens=tokens_used,
        insufficient=insufficient,
        highest_score=highest_score,
        selection=selection,
    )


def build_summary_memory(trimmed: list[ChatMessage], summary: SummaryConfig) -> str | None:
    """Condense the most recent trimmed turns into `U:`/`A:` lines."""
    recent = trimmed[-summary.max_turns:]
    if not recent:
        return None
    per_line = max(SUMMARY_MIN_LINE_CHARS, summary.max_chars // len(recent))
    lines = []
    for message in recent:
        prefix = "A" if message.role == "assistant" else "U"
        lines.append(f"{prefix}: {message.content.strip()[:per_line]}")
    text = "\n".join(lines)[: summary.max_chars].strip()
    return text or None


def build_history_window(
    messages: list[ChatMessage],
    config: GuardrailConfig,
    counter: TokenCounter | None = None,
) -> HistoryWindowResult:
    """Keep the most recent turns that fit the history budget.

    Turns are walked newest first and the walk stops at the first turn that
    does not fit. When summarization is on and the full history exceeds the
    trigger, trimmed turns are folded into one synthetic system turn placed
    before the kept turns. The summary turn is added after the walk, so
    `token_count` can exceed the history budget by its cost.
    """
    if not messages:
        return HistoryWindowResult()

    costs = [estimate_message_tokens(m, counter) for m in messages]
    total = sum(costs)
    budget = config.history_token_budget

    tokens_used = 0
    cutoff = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        if tokens_used + costs[index] > budget:
            break
        tokens_used += costs[index]
        cutoff = index

    kept = list(messages[cutoff:])
    trimmed = list(messages[:cutoff])

    summary_text = None
    if config.summary.enabled and trimmed and total > config.summary.trigger_tokens:
        summary_text = build_summary_memory(trimmed, config.summary)
    if summary_text:
        summary_turn = ChatMessage(role="system", content=summary_text)
        kept.insert(0, summary_turn)
        tokens_used += estimate_message_tokens(summary_turn, counter)

    logger.debug(
        "History window: kept %d, trimmed %d, %d/%d tokens, summary=%s",
        len(kept),
        len(trimmed),
        tokens_used,
        budget,
        summary_text is not None,
    )
    return HistoryWindowResult(
        included=kept, trimmed=trimmed, token_count=tokens_used, summary=summary_text
    )


def build_intent_fallback(intent: Intent, config: GuardrailConfig) -> ContextWindowResult:
    """Context result used when retrieval is skipped for a non-knowledge intent."""
    if intent == "chitchat":
        block = config.fallback_chitchat
    elif intent == "command":
        block = config.fallback_command
    else:
        block = ""
    return ContextWindowResult(context_block=block, insufficient=True)
