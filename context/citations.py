"""Citation aggregation: group context chunks back into scored documents."""

from __future__ import annotations

import math

from core.models import (
    CitationChunkDetail,
    CitationDocScore,
    CitationMeta,
    CitationPayload,
    ContextItem,
)

MAX_SNIPPET_LENGTH = 240
NO_CITATIONS_MESSAGE = "No citations were generated."


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_snippet(text: str) -> str:
    condensed = " ".join((text or "").split())
    if len(condensed) <= MAX_SNIPPET_LENGTH:
        return condensed
    return f"{condensed[:MAX_SNIPPET_LENGTH]}…"


def _document_key(doc_id: str | None, url: str | None, index: int) -> str:
    if doc_id:
        return doc_id
    if url:
        return url.strip().lower()
    return f"idx:{index}"


def build_citation_payload(included: list[ContextItem], top_k_chunks: int | None = None) -> CitationPayload:
    """Aggregate included chunks per document and normalize against the top score.

    finalScore = similarity_max * weight; normalized_score is 100 for the best
    document and 0 for everything when no document scores above zero.
    """
    top_k = max(0, top_k_chunks if top_k_chunks is not None else len(included))
    groups: dict[str, CitationDocScore] = {}
    similarity_sums: dict[str, float] = {}

    for chunk_index, item in enumerate(included):
        candidate = item.candidate
        similarity = candidate.raw_similarity if math.isfinite(candidate.raw_similarity) else 0.0
        weight = candidate.metadata_weight
        detail = CitationChunkDetail(
            chunk_index=chunk_index,
            snippet=build_snippet(item.pruned_text or candidate.chunk_text),
            similarity=similarity,
            weight=weight,
            final_score=similarity * weight,
        )
        key = _document_key(candidate.document_id, candidate.source_url, chunk_index)

        group = groups.get(key)
        if group is None:
            groups[key] = CitationDocScore(
                doc_id=candidate.document_id,
                title=candidate.title,
                url=candidate.source_url,
                doc_type=candidate.doc_type,
                persona_type=candidate.persona_type,
                similarity_max=similarity,
                weight=weight,
                excerpt_count=1,
                chunk_indices=[chunk_index],
                chunks=[detail],
            )
            similarity_sums[key] = similarity
        else:
            group.similarity_max = max(group.similarity_max, similarity)
            group.excerpt_count += 1
            group.chunk_indices.append(chunk_index)
            group.chunks.append(detail)
            similarity_sums[key] += similarity

    for key, group in groups.items():
        group.final_score = group.similarity_max * group.weight
        group.similarity_avg = similarity_sums[key] / group.excerpt_count

    highest = max((g.final_score for g in groups.values()), default=0.0)
    for group in groups.values():
        group.normalized_score = round_half_up(group.final_score / highest * 100) if highest > 0 else 0

    citations = sorted(groups.values(), key=lambda g: (-g.final_score, -g.similarity_max))

    unique_docs = len(citations)
    if unique_docs == 0:
        message = NO_CITATIONS_MESSAGE
    elif top_k == unique_docs:
        message = f"Top {top_k} chunks were retrieved."
    else:
        message = f"Top {top_k} chunks → grouped into {unique_docs} documents."

    return CitationPayload(
        citations=citations,
        meta=CitationMeta(top_k_chunks=top_k, unique_docs=unique_docs, message=message),
    )
