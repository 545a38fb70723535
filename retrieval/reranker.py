"""Ranking stage: identity, MMR diversity selection, or remote rerank."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from core.config import parse_ranker_mode, settings
from core.errors import PipelineCancelled
from core.models import EnrichedCandidate, RankedCandidate

if TYPE_CHECKING:
    from core.cancellation import CancellationToken
    from retrieval.providers import Embedder

logger = logging.getLogger(__name__)

MMR_LAMBDA = 0.5


class RemoteReranker(Protocol):
    def rerank(
        self,
        query: str,
        documents: list[str],
        top_n: int,
        cancel: CancellationToken | None = None,
    ) -> list[tuple[int, float]]:
        """Return (document index, relevance score) pairs, best first."""
        ...


class VoyageReranker:
    """Remote reranker backed by Voyage AI."""

    def __init__(self, client=None, model: str | None = None):
        if client is None:
            import voyageai

            client = voyageai.Client(api_key=settings.voyage_api_key or None)
        self.client = client
        self.model = model or settings.rerank_model

    def rerank(
        self,
        query: str,
        documents: list[str],
        top_n: int,
        cancel: CancellationToken | None = None,
    ) -> list[tuple[int, float]]:
        if cancel is not None:
            cancel.raise_if_cancelled("rerank")
        if not documents:
            return []
        result = self.client.rerank(
            query=query, documents=documents, model=self.model, top_k=top_n
        )
        if cancel is not None:
            cancel.raise_if_cancelled("rerank")
        return [(r.index, float(r.relevance_score)) for r in result.results]


def _with_ranks(candidates: list[EnrichedCandidate]) -> list[RankedCandidate]:
    return [
        RankedCandidate(**candidate.model_dump(exclude={"rank"}), rank=i + 1)
        for i, candidate in enumerate(candidates)
    ]


def _cosine_matrix(vectors: np.ndarray, query: np.ndarray) -> np.ndarray:
    denom = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
    safe = np.where(denom > 0, denom, 1.0)
    return np.where(denom > 0, (vectors @ query) / safe, 0.0)


def select_mmr(
    candidates: list[EnrichedCandidate],
    query_embedding: list[float],
    embeddings: list[list[float]],
    max_results: int,
    mmr_lambda: float = MMR_LAMBDA,
) -> list[EnrichedCandidate]:
    """Greedy maximal marginal relevance selection.

    score = lambda * sim(query, doc) - (1 - lambda) * max sim(doc, selected).
    Candidates without a usable embedding are skipped. Ties go to the earlier
    candidate.
    """
    if not candidates or not query_embedding:
        return candidates[:max_results]

    mmr_lambda = max(0.0, min(1.0, mmr_lambda))
    query_vec = np.asarray(query_embedding, dtype=float)
    usable = [
        i
        for i, emb in enumerate(embeddings)
        if emb is not None and len(emb) == len(query_vec)
    ]
    if not usable:
        logger.warning("No candidate embeddings usable for MMR, keeping vector order")
        return candidates[:max_results]

    matrix = np.asarray([embeddings[i] for i in usable], dtype=float)
    relevance = _cosine_matrix(matrix, query_vec)
    norms = np.linalg.norm(matrix, axis=1)
    safe = np.where(norms > 0, norms, 1.0)
    unit = matrix / safe[:, None]
    unit[norms == 0] = 0.0
    pairwise = unit @ unit.T

    selected: list[int] = []
    remaining = list(range(len(usable)))
    limit = min(max_results, len(usable))
    while len(selected) < limit:
        best_pos = None
        best_score = -np.inf
        for pos in remaining:
            penalty = max(pairwise[pos, s] for s in selected) if selected else 0.0
            score = mmr_lambda * relevance[pos] - (1 - mmr_lambda) * penalty
            if score > best_score:
                best_score = score
                best_pos = pos
        if best_pos is None:
            break
        selected.append(best_pos)
        remaining.remove(best_pos)

    return [candidates[usable[pos]] for pos in selected]


def _run_mmr(
    candidates: list[EnrichedCandidate],
    query_embedding: list[float] | None,
    embedder: Embedder | None,
    max_results: int,
    mmr_lambda: float,
    cancel: CancellationToken | None,
) -> list[EnrichedCandidate]:
    if not query_embedding:
        return candidates[:max_results]

    embeddings: list[list[float]] = [c.embedding for c in candidates]
    missing = [i for i, emb in enumerate(embeddings) if not emb]
    if missing and embedder is not None:
        fresh = embedder.embed_many([candidates[i].chunk_text for i in missing], cancel=cancel)
        for i, emb in zip(missing, fresh):
            embeddings[i] = emb

    return select_mmr(candidates, query_embedding, embeddings, max_results, mmr_lambda)


def _run_remote(
    candidates: list[EnrichedCandidate],
    query: str,
    reranker: RemoteReranker | None,
    max_results: int,
    cancel: CancellationToken | None,
) -> list[EnrichedCandidate]:
    if reranker is None:
        logger.warning("Remote rerank requested but no reranker configured, using vector order")
        return candidates[:max_results]

    ordering = reranker.rerank(query, [c.chunk_text for c in candidates], max_results, cancel=cancel)
    reranked = []
    seen = set()
    for index, score in ordering:
        if index in seen or not 0 <= index < len(candidates):
            continue
        seen.add(index)
        reranked.append(candidates[index].model_copy(update={"final_score": score}))
    return reranked[:max_results]


def apply_ranker(
    candidates: list[EnrichedCandidate],
    mode: str,
    max_results: int,
    query: str = "",
    query_embedding: list[float] | None = None,
    embedder: Embedder | None = None,
    reranker: RemoteReranker | None = None,
    mmr_lambda: float = MMR_LAMBDA,
    cancel: CancellationToken | None = None,
) -> list[RankedCandidate]:
    """Reorder and truncate enriched candidates using the requested mode.

    Args:
        candidates: Enriched candidates in retrieval order
        mode: "none", "mmr" or "remote-rerank"; unknown values behave as "none"
        max_results: Output width (final_k for "none", rerank_k otherwise)
        query: Query text sent to the remote reranker
        query_embedding: Embedding used for MMR relevance
        embedder: Used to embed candidates that came back without vectors
        reranker: Remote reranking service
        mmr_lambda: Relevance/novelty trade-off for MMR
        cancel: Cancellation token

    Returns:
        Ranked candidates with 1-based ranks
    """
    if not candidates:
        return []

    width = max(1, int(max_results))
    resolved = parse_ranker_mode(mode)
    if resolved == "none" and str(mode).strip().lower() != "none":
        logger.warning("Unknown ranker mode '%s', using '%s'", mode, resolved)

    if resolved == "mmr":
        try:
            ordered = _run_mmr(candidates, query_embedding, embedder, width, mmr_lambda, cancel)
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning("MMR ranking failed, using vector order: %s", e)
            ordered = candidates[:width]
    elif resolved == "remote-rerank":
        try:
            ordered = _run_remote(candidates, query, reranker, width, cancel)
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning("Remote rerank failed, using vector order: %s", e)
            ordered = candidates[:width]
    else:
        ordered = candidates[:width]

    logger.debug("Ranked %d candidates to %d (mode=%s)", len(candidates), len(ordered), resolved)
    return _with_ranks(ordered)
