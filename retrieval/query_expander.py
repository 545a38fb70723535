"""Query enhancement via LLM: reverse-RAG rewrite and HyDE synthesis."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.config import DEFAULT_REVERSE_RAG_MODE, ReverseRagMode
from core.errors import PipelineCancelled
from core.models import EnhancedQuery, RetrievalRequest

if TYPE_CHECKING:
    from core.cancellation import CancellationToken
    from retrieval.providers import TextGenerator

logger = logging.getLogger(__name__)

REVERSE_RAG_MAX_TOKENS = 64
REVERSE_RAG_TEMPERATURE = 0.2
HYDE_MAX_TOKENS = 220
HYDE_TEMPERATURE = 0.35

MODE_DESCRIPTORS: dict[str, str] = {
    "precision": "Focus the search terms on the most specific and distinguishing concepts.",
    "recall": "Include broader synonyms or related topics to cast a wider net.",
}


def rewrite_query(
    question: str,
    enabled: bool,
    generator: TextGenerator,
    model: str | None = None,
    mode: ReverseRagMode = DEFAULT_REVERSE_RAG_MODE,
    cancel: CancellationToken | None = None,
) -> str:
    """Rewrite the user question into a search query (reverse-RAG).

    Args:
        question: Original user question
        enabled: When False the question is returned unchanged without a model call
        generator: Text generation provider
        model: Model id passed to the provider
        mode: "precision" for literal rewrites, "recall" for broader paraphrase
        cancel: Cancellation token for the provider call

    Returns:
        Rewritten query, or the original question on failure / empty output
    """
    if not enabled or not question or not question.strip():
        return question

    descriptor = MODE_DESCRIPTORS.get(mode, MODE_DESCRIPTORS[DEFAULT_REVERSE_RAG_MODE])
    system_prompt = (
        "You rewrite user questions into concise search queries optimized for a "
        "document search engine. Return only the rewritten query."
    )
    user_prompt = "\n".join([f"Mode: {mode} ({descriptor})", "Question:", question])

    try:
        rewritten = generator.generate(
            system_prompt,
            user_prompt,
            model=model,
            temperature=REVERSE_RAG_TEMPERATURE,
            max_tokens=REVERSE_RAG_MAX_TOKENS,
            cancel=cancel,
        )
    except PipelineCancelled:
        raise
    except Exception as e:
        logger.warning("Reverse query rewrite failed, using original question: %s", e)
        return question

    rewritten = (rewritten or "").strip()
    logger.debug("Rewrote query (%s): %s -> %s", mode, question, rewritten)
    return rewritten or question


def generate_hyde_document(
    query: str,
    enabled: bool,
    generator: TextGenerator,
    model: str | None = None,
    cancel: CancellationToken | None = None,
) -> str | None:
    """Synthesize a short hypothetical answer passage for embedding (HyDE).

    Returns None when disabled, when the query is blank, on empty output and
    on provider failure.
    """
    if not enabled or not query or not query.strip():
        return None

    system_prompt = (
        "You are generating a hypothetical document that could plausibly answer "
        "the user question. Provide a short passage that contains potential "
        "statements or facts."
    )
    user_prompt = "\n".join(["Question:", query])

    try:
        hyde = generator.generate(
            system_prompt,
            user_prompt,
            model=model,
            temperature=HYDE_TEMPERATURE,
            max_tokens=HYDE_MAX_TOKENS,
            cancel=cancel,
        )
    except PipelineCancelled:
        raise
    except Exception as e:
        logger.warning("HyDE generation failed, embedding the query instead: %s", e)
        return None

    hyde = (hyde or "").strip()
    return hyde or None


def enhance_query(
    request: RetrievalRequest,
    generator: TextGenerator,
    cancel: CancellationToken | None = None,
) -> EnhancedQuery:
    """Run reverse-RAG then HyDE and pick the embedding target."""
    flags = request.flags
    model = request.model or None
    rewritten = rewrite_query(
        request.question,
        enabled=flags.reverse_rag_enabled,
        generator=generator,
        model=model,
        mode=flags.reverse_rag_mode,
        cancel=cancel,
    )
    hyde = generate_hyde_document(
        rewritten, enabled=flags.hyde_enabled, generator=generator, model=model, cancel=cancel
    )
    return EnhancedQuery.build(request.question, rewritten, hyde)
