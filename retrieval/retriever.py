"""Weighted retrieval: K-normalization, vector search, metadata enrichment."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from core.config import RankerMode
from core.errors import EmbeddingError, PipelineCancelled, RetrievalError, VectorSearchError
from core.models import Candidate, DocumentMetadata, EnhancedQuery, EnrichedCandidate, RagK
from retrieval.metadata import (
    DOC_ID_KEYS,
    SOURCE_URL_KEYS,
    canonical_doc_id,
    canonicalize_metadata,
    compute_metadata_weight,
    is_excluded_by_weight,
    resolve_source_url,
)

if TYPE_CHECKING:
    from core.cancellation import CancellationToken
    from core.config import ChatConfigSnapshot, RankingConfig
    from retrieval.providers import Embedder
    from storage.metadata_store import CanonicalPageLookup, MetadataSource
    from storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_RERANK_K = 20


def normalize_rag_k(
    retrieve_k: int,
    final_k: int,
    rerank_enabled: bool,
    rerank_k: int | None = None,
) -> RagK:
    """Reconcile retrieval, rerank and final widths.

    Args:
        retrieve_k: Retrieval base width (floor combined with the candidate hint)
        final_k: Final context width base
        rerank_enabled: Whether a ranking stage narrows the pool
        rerank_k: Explicit rerank width, or None to derive it

    Returns:
        RagK with final_k <= rerank_k <= retrieve_k, all >= 1
    """
    final_k_base = max(1, final_k)
    retrieve_k_base = max(1, retrieve_k)

    if not rerank_enabled:
        out_retrieve = max(retrieve_k_base, final_k_base)
        return RagK(retrieve_k=out_retrieve, rerank_k=None, final_k=min(final_k_base, out_retrieve))

    if rerank_k is not None:
        rerank_k_base = max(1, rerank_k)
    else:
        rerank_k_base = min(retrieve_k_base, DEFAULT_RERANK_K)
    out_retrieve = max(retrieve_k_base, rerank_k_base)
    out_rerank = min(rerank_k_base, out_retrieve)
    return RagK(retrieve_k=out_retrieve, rerank_k=out_rerank, final_k=min(final_k_base, out_rerank))


def resolve_rag_k(snapshot: ChatConfigSnapshot, candidate_k: int, ranker_mode: RankerMode) -> RagK:
    """Derive the K triple for one request from the config snapshot."""
    return normalize_rag_k(
        retrieve_k=max(snapshot.retrieve_floor, candidate_k),
        final_k=max(1, snapshot.guardrails.rag_top_k),
        rerank_enabled=ranker_mode != "none",
        rerank_k=snapshot.rerank_k,
    )


class RetrievalOutcome(BaseModel):
    query_embedding: list[float] = Field(default_factory=list)
    candidates_retrieved: int = 0
    enriched: list[EnrichedCandidate] = Field(default_factory=list)
    filtered_out: int = 0


def _raw_doc_id(candidate: Candidate) -> str | None:
    if candidate.document_id and candidate.document_id.strip():
        return candidate.document_id.strip()
    for key in DOC_ID_KEYS:
        value = candidate.raw_metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def collect_doc_id_variants(candidates: list[Candidate]) -> list[str]:
    """Raw and canonical spellings of every candidate's document id, de-duplicated."""
    ids: dict[str, None] = {}
    for candidate in candidates:
        raw = _raw_doc_id(candidate)
        if raw is None:
            continue
        ids[raw] = None
        canonical = canonical_doc_id(raw)
        if canonical:
            ids[canonical] = None
    return list(ids)


def enrich_and_filter(
    candidates: list[Candidate],
    metadata_map: dict[str, DocumentMetadata],
    ranking: RankingConfig | None,
    site_url: str,
    canonical_lookup: CanonicalPageLookup | None = None,
) -> tuple[list[EnrichedCandidate], int]:
    """Attach authoritative metadata and weights, dropping disallowed candidates.

    Returns the enriched candidates sorted by final score (ties keep retrieval
    order) and the number filtered out.
    """
    enriched: list[EnrichedCandidate] = []
    filtered = 0
    allowed = set(ranking.allowed_doc_types) if ranking and ranking.allowed_doc_types else None

    for candidate in candidates:
        raw_meta = canonicalize_metadata(candidate.raw_metadata)
        doc_id = canonical_doc_id(_raw_doc_id(candidate)) or (raw_meta.doc_id if raw_meta else None)
        authoritative = metadata_map.get(doc_id) if doc_id else None

        if raw_meta is not None:
            metadata = raw_meta.merged_with(authoritative)
        else:
            metadata = authoritative

        if metadata is None and ranking is not None and ranking.require_metadata:
            filtered += 1
            continue
        if metadata is not None and metadata.is_public is False:
            logger.debug("Dropping non-public document %s", doc_id)
            filtered += 1
            continue
        if allowed is not None and (metadata is None or metadata.doc_type not in allowed):
            filtered += 1
            continue
        if is_excluded_by_weight(metadata, ranking):
            logger.debug("Dropping document %s with zero-weight type", doc_id)
            filtered += 1
            continue

        raw_url = None
        for key in SOURCE_URL_KEYS:
            value = candidate.raw_metadata.get(key)
            if isinstance(value, str) and value.strip():
                raw_url = value.strip()
                break
        if raw_url is None and metadata is not None:
            raw_url = metadata.source_url

        weight = compute_metadata_weight(metadata, ranking)
        enriched.append(
            EnrichedCandidate(
                chunk_text=candidate.chunk_text,
                raw_similarity=candidate.raw_similarity,
                raw_metadata=candidate.raw_metadata,
                retrieval_index=candidate.retrieval_index,
                embedding=candidate.embedding,
                document_id=doc_id,
                title=metadata.title if metadata else None,
                source_url=resolve_source_url(doc_id, raw_url, site_url, canonical_lookup),
                doc_type=metadata.doc_type if metadata else None,
                persona_type=metadata.persona_type if metadata else None,
                metadata=metadata,
                metadata_weight=weight,
                final_score=candidate.raw_similarity * weight,
            )
        )

    enriched.sort(key=lambda c: (-c.final_score, c.retrieval_index))
    return enriched, filtered


class WeightedRetriever:
    """Embeds the enhancement target, searches the index and re-weights hits."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        metadata_store: MetadataSource | None = None,
        canonical_lookup: CanonicalPageLookup | None = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.metadata_store = metadata_store
        self.canonical_lookup = canonical_lookup

    def retrieve(
        self,
        enhanced: EnhancedQuery,
        k: RagK,
        snapshot: ChatConfigSnapshot,
        cancel: CancellationToken | None = None,
    ) -> RetrievalOutcome:
        """Run the weighted retrieval stage.

        Embedding and vector-search failures are fatal and raised as
        `RetrievalError` subclasses. An empty pool is a valid outcome.
        """
        try:
            query_embedding = self.embedder.embed(enhanced.embedding_target, cancel=cancel)
        except (RetrievalError, PipelineCancelled):
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Embedding failed: {e}", status_code=getattr(e, "status_code", None)
            ) from e

        try:
            candidates = self.vector_store.search(query_embedding, k.retrieve_k, cancel=cancel)
        except (RetrievalError, PipelineCancelled):
            raise
        except Exception as e:
            raise VectorSearchError(f"Vector search failed: {e}") from e

        # Provider order is arbitrary; pin retrieval order to score, then text.
        candidates = sorted(
            enumerate(candidates),
            key=lambda pair: (-pair[1].raw_similarity, pair[1].chunk_text, pair[0]),
        )
        candidates = [
            c.model_copy(update={"retrieval_index": i}) for i, (_, c) in enumerate(candidates)
        ]

        low_result_threshold = max(1, k.retrieve_k // 2)
        if len(candidates) < low_result_threshold:
            logger.warning(
                "Low result count: requested %d, returned %d", k.retrieve_k, len(candidates)
            )

        metadata_map: dict[str, DocumentMetadata] = {}
        doc_ids = collect_doc_id_variants(candidates)
        if doc_ids and self.metadata_store is not None:
            try:
                fetched = self.metadata_store.fetch_by_ids(doc_ids)
            except PipelineCancelled:
                raise
            except Exception as e:
                logger.warning("Metadata fetch failed, continuing without it: %s", e)
                fetched = {}
            for doc_id, metadata in fetched.items():
                canonical = canonical_doc_id(doc_id)
                if canonical:
                    metadata_map[canonical] = metadata

        enriched, filtered = enrich_and_filter(
            candidates,
            metadata_map,
            snapshot.ranking,
            snapshot.public_site_url,
            self.canonical_lookup,
        )
        logger.info(
            "Retrieved %d candidates, %d after filtering (retrieve_k=%d)",
            len(candidates),
            len(enriched),
            k.retrieve_k,
        )
        return RetrievalOutcome(
            query_embedding=query_embedding,
            candidates_retrieved=len(candidates),
            enriched=enriched,
            filtered_out=filtered,
        )
