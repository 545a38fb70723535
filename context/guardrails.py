"""Guardrail intent classification: decide whether retrieval should run."""

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel

from core.config import GuardrailConfig
from core.models import ChatMessage, ContextWindowResult, GuardrailDecision, Intent

logger = logging.getLogger(__name__)

Language = Literal["en", "ko", "mixed", "unknown"]

COMMAND_KEYWORDS = (
    "delete",
    "reset",
    "ingest",
    "scrape",
    "crawl",
    "deploy",
    "restart",
    "shutdown",
    "drop table",
    "truncate",
    "rm -rf",
    "sudo",
    "build pipeline",
)

CHITCHAT_MAX_TRAILING_WORDS = 2
CHITCHAT_HISTORY_TURNS = 2

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^a-z0-9가-힣\s]")
_HANGUL = re.compile(r"[가-힣]")
_LATIN = re.compile(r"[a-zA-Z]")


class NormalizedQuestion(BaseModel):
    raw: str
    normalized: str
    canonical: str
    language: Language


class RoutedQuestion(BaseModel):
    question: NormalizedQuestion
    intent: Intent
    confidence: float
    reason: str


def detect_language(text: str) -> Language:
    if _HANGUL.search(text):
        return "mixed" if _LATIN.search(text) else "ko"
    if _LATIN.search(text):
        return "en"
    return "unknown"


def normalize_question(raw: str) -> NormalizedQuestion:
    normalized = _WHITESPACE.sub(" ", raw or "").strip()
    canonical = _NON_WORD.sub(" ", normalized.lower())
    return NormalizedQuestion(
        raw=raw or "",
        normalized=normalized,
        canonical=canonical,
        language=detect_language(normalized),
    )


def matches_chitchat_keyword(text: str, keyword: str) -> bool:
    """Exact match, or the keyword followed by at most two more words."""
    if not text or not keyword:
        return False
    text = text.strip()
    if text == keyword:
        return True
    if not text.startswith(keyword):
        return False
    remainder = text[len(keyword):]
    if remainder and not remainder[0].isspace():
        return False
    return len(remainder.split()) <= CHITCHAT_MAX_TRAILING_WORDS


def is_command_intent(canonical: str) -> bool:
    return any(keyword in canonical for keyword in COMMAND_KEYWORDS)


def is_chitchat_intent(canonical: str, history: list[ChatMessage], keywords: tuple[str, ...]) -> bool:
    if any(matches_chitchat_keyword(canonical, keyword) for keyword in keywords):
        return True

    # The two user turns before the latest one, which is the current question.
    user_turns = [m.content for m in history if m.role == "user"]
    prior = [normalize_question(turn).canonical for turn in user_turns[:-1][-CHITCHAT_HISTORY_TURNS:]]
    return any(
        matches_chitchat_keyword(entry, keyword) for keyword in keywords for entry in prior
    )


def route_question(
    question: NormalizedQuestion,
    history: list[ChatMessage] | None,
    config: GuardrailConfig,
) -> RoutedQuestion:
    """Classify the question as knowledge, chitchat or command. No model call."""
    canonical = question.canonical.strip()
    if not canonical:
        return RoutedQuestion(
            question=question, intent="knowledge", confidence=0.2, reason="empty_after_normalization"
        )
    if is_command_intent(canonical):
        return RoutedQuestion(
            question=question, intent="command", confidence=0.8, reason="command_keyword_detected"
        )
    if is_chitchat_intent(canonical, list(history or []), config.chitchat_keywords):
        return RoutedQuestion(
            question=question, intent="chitchat", confidence=0.75, reason="chitchat_pattern_detected"
        )
    return RoutedQuestion(
        question=question, intent="knowledge", confidence=0.6, reason="default_knowledge_route"
    )


def build_guardrail_decision(routed: RoutedQuestion, context: ContextWindowResult) -> GuardrailDecision:
    reason = routed.reason
    if routed.intent == "knowledge" and context.insufficient:
        reason = "insufficient_evidence"
    decision = GuardrailDecision(
        intent=routed.intent,
        confidence=routed.confidence,
        reason=reason,
        language=routed.question.language,
        included_count=len(context.included),
        dropped_count=context.dropped,
        highest_similarity=context.highest_score,
        insufficient=context.insufficient,
    )
    logger.info(
        "Guardrail decision: intent=%s reason=%s included=%d",
        decision.intent,
        decision.reason,
        decision.included_count,
    )
    return decision
