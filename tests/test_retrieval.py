"""Unit tests for retrieval pipeline components."""

from __future__ import annotations

from unittest.mock import MagicMock, Mock

import pytest

from core.config import ChatConfigSnapshot, RankingConfig
from core.errors import EmbeddingError, PipelineCancelled, VectorSearchError
from core.models import (
    Candidate,
    DocumentMetadata,
    EnhancedQuery,
    EnrichedCandidate,
    FeatureFlags,
    RetrievalRequest,
)
from retrieval.metadata import (
    canonical_doc_id,
    canonicalize_metadata,
    compute_metadata_weight,
    is_excluded_by_weight,
    resolve_source_url,
    rewrite_notion_url,
)
from retrieval.query_expander import (
    HYDE_MAX_TOKENS,
    REVERSE_RAG_MAX_TOKENS,
    REVERSE_RAG_TEMPERATURE,
    enhance_query,
    generate_hyde_document,
    rewrite_query,
)
from retrieval.reranker import VoyageReranker, apply_ranker, select_mmr
from retrieval.retriever import (
    WeightedRetriever,
    enrich_and_filter,
    normalize_rag_k,
    resolve_rag_k,
)

NOTION_ID = "0123456789abcdef0123456789abcdef"


def make_enriched(text: str, score: float, index: int, embedding=None, doc_id=None) -> EnrichedCandidate:
    return EnrichedCandidate(
        chunk_text=text,
        raw_similarity=score,
        document_id=doc_id or f"doc-{index}",
        retrieval_index=index,
        embedding=embedding or [],
        final_score=score,
    )


class TestQueryExpander:
    """Tests for reverse-RAG rewriting and HyDE synthesis."""

    def test_rewrite_disabled_is_identity(self):
        """Test disabled rewrite returns the question without a model call."""
        generator = MagicMock()

        result = rewrite_query("What is RAG?", enabled=False, generator=generator)

        assert result == "What is RAG?"
        generator.generate.assert_not_called()

    def test_rewrite_calls_generator_and_strips(self):
        """Test enabled rewrite returns trimmed provider output."""
        generator = MagicMock()
        generator.generate.return_value = "  rag retrieval augmented generation \n"

        result = rewrite_query("What is RAG?", enabled=True, generator=generator, mode="recall")

        assert result == "rag retrieval augmented generation"
        call_args = generator.generate.call_args
        assert "Mode: recall" in call_args.args[1]
        assert call_args.kwargs["temperature"] == REVERSE_RAG_TEMPERATURE
        assert call_args.kwargs["max_tokens"] == REVERSE_RAG_MAX_TOKENS

    def test_rewrite_failure_falls_back_to_question(self):
        """Test provider errors degrade to the original question."""
        generator = MagicMock()
        generator.generate.side_effect = RuntimeError("rate limited")

        assert rewrite_query("original", enabled=True, generator=generator) == "original"

    def test_rewrite_empty_output_falls_back(self):
        generator = MagicMock()
        generator.generate.return_value = "   "

        assert rewrite_query("original", enabled=True, generator=generator) == "original"

    def test_rewrite_propagates_cancellation(self):
        """Test cancellation is not swallowed by the fallback path."""
        generator = MagicMock()
        generator.generate.side_effect = PipelineCancelled("generate")

        with pytest.raises(PipelineCancelled):
            rewrite_query("original", enabled=True, generator=generator)

    def test_hyde_disabled_returns_none(self):
        generator = MagicMock()

        assert generate_hyde_document("query", enabled=False, generator=generator) is None
        generator.generate.assert_not_called()

    def test_hyde_returns_passage(self):
        generator = MagicMock()
        generator.generate.return_value = "A hypothetical passage."

        result = generate_hyde_document("query", enabled=True, generator=generator)

        assert result == "A hypothetical passage."
        assert generator.generate.call_args.kwargs["max_tokens"] == HYDE_MAX_TOKENS

    def test_hyde_failure_returns_none(self):
        generator = MagicMock()
        generator.generate.side_effect = TimeoutError("slow")

        assert generate_hyde_document("query", enabled=True, generator=generator) is None

    def test_enhance_identity_law(self):
        """Test both enhancements off makes the embedding target the question."""
        generator = MagicMock()
        request = RetrievalRequest(question="Who wrote this site?")

        enhanced = enhance_query(request, generator)

        assert enhanced.embedding_target == "Who wrote this site?"
        assert enhanced.rewritten_query == "Who wrote this site?"
        assert enhanced.hypothetical_document is None
        generator.generate.assert_not_called()

    def test_enhance_prefers_hyde_target(self):
        """Test HyDE runs on the rewritten query and becomes the embedding target."""
        generator = MagicMock()
        generator.generate.side_effect = ["rewritten query", "hyde passage"]
        request = RetrievalRequest(
            question="original",
            flags=FeatureFlags(reverse_rag_enabled=True, hyde_enabled=True),
        )

        enhanced = enhance_query(request, generator)

        assert enhanced.rewritten_query == "rewritten query"
        assert enhanced.embedding_target == "hyde passage"
        assert "rewritten query" in generator.generate.call_args_list[1].args[1]

    def test_enhance_rewrite_only_targets_rewrite(self):
        generator = MagicMock()
        generator.generate.return_value = "rewritten"
        request = RetrievalRequest(question="q", flags=FeatureFlags(reverse_rag_enabled=True))

        enhanced = enhance_query(request, generator)

        assert enhanced.embedding_target == "rewritten"

    def test_enhancement_summary(self):
        flags = FeatureFlags(hyde_enabled=True, ranker_mode="mmr")
        summary = EnhancedQuery.build("q", "q", "passage").enhancement_summary(flags)

        assert summary["hyde"] == {"enabled": True, "generated": "passage"}
        assert summary["ranker"]["mode"] == "mmr"


class TestNormalizeRagK:
    """Tests for retrieval / rerank / final width reconciliation."""

    def test_rerank_disabled(self):
        k = normalize_rag_k(retrieve_k=5, final_k=5, rerank_enabled=False)
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (5, None, 5)

    def test_rerank_default_width(self):
        k = normalize_rag_k(retrieve_k=50, final_k=12, rerank_enabled=True)
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (50, 20, 12)

    def test_explicit_rerank_raises_retrieve(self):
        k = normalize_rag_k(retrieve_k=10, final_k=12, rerank_enabled=True, rerank_k=18)
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (18, 18, 12)

    def test_final_capped_by_rerank(self):
        k = normalize_rag_k(retrieve_k=30, final_k=25, rerank_enabled=True, rerank_k=20)
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (30, 20, 20)

    def test_disabled_raises_retrieve_to_final(self):
        k = normalize_rag_k(retrieve_k=3, final_k=8, rerank_enabled=False)
        assert (k.retrieve_k, k.final_k) == (8, 8)

    def test_non_positive_inputs_floor_at_one(self):
        k = normalize_rag_k(retrieve_k=0, final_k=-4, rerank_enabled=True, rerank_k=0)
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (1, 1, 1)

    def test_ordering_invariant_holds_across_inputs(self):
        """Test final_k <= rerank_k <= retrieve_k for a grid of inputs."""
        for retrieve in (1, 2, 5, 19, 20, 21, 60):
            for final in (1, 3, 12, 40):
                for rerank in (None, 1, 7, 25):
                    k = normalize_rag_k(retrieve, final, True, rerank)
                    assert 1 <= k.final_k <= k.rerank_k <= k.retrieve_k
                    off = normalize_rag_k(retrieve, final, False, rerank)
                    assert off.rerank_k is None
                    assert 1 <= off.final_k <= off.retrieve_k

    def test_resolve_from_snapshot(self):
        snapshot = ChatConfigSnapshot(retrieve_floor=5)
        k = resolve_rag_k(snapshot, candidate_k=12, ranker_mode="mmr")
        assert (k.retrieve_k, k.rerank_k, k.final_k) == (12, 12, 5)
        assert k.rank_width == 12

    def test_resolve_without_ranker_uses_final_width(self):
        k = resolve_rag_k(ChatConfigSnapshot(), candidate_k=1, ranker_mode="none")
        assert k.rerank_k is None
        assert k.rank_width == k.final_k == 5


class TestMetadata:
    """Tests for metadata canonicalization, URL resolution and weighting."""

    def test_canonical_doc_id_normalizes_notion_ids(self):
        dashed = "01234567-89AB-CDEF-0123-456789abcdef"
        assert canonical_doc_id(dashed) == NOTION_ID
        assert canonical_doc_id("  doc-1 ") == "doc-1"
        assert canonical_doc_id("   ") is None

    def test_canonicalize_metadata_maps_key_variants(self):
        meta = canonicalize_metadata(
            {
                "docId": "doc-1",
                "docType": "KB_ARTICLE",
                "personaType": "alien",
                "isPublic": True,
                "tags": ["b", "a", "a", ""],
                "document_meta": {"title": "Nested title"},
                "custom": 1,
            }
        )

        assert meta.doc_id == "doc-1"
        assert meta.doc_type == "kb_article"
        assert meta.persona_type is None
        assert meta.is_public is True
        assert meta.tags == ("a", "b")
        assert meta.title == "Nested title"
        assert meta.extra == {"custom": 1}

    def test_canonicalize_empty_is_none(self):
        assert canonicalize_metadata({}) is None
        assert canonicalize_metadata(None) is None

    def test_weight_product_of_doc_and_persona(self):
        meta = DocumentMetadata(doc_type="profile", persona_type="professional")
        assert compute_metadata_weight(meta) == pytest.approx(1.15 * 1.1)

    def test_missing_types_weight_one(self):
        assert compute_metadata_weight(None) == 1.0
        assert compute_metadata_weight(DocumentMetadata()) == 1.0

    def test_weight_clamped_to_range(self):
        high = RankingConfig(doc_type_weights={"profile": 5.0})
        low = RankingConfig(doc_type_weights={"photo": 0.05})

        assert compute_metadata_weight(
            DocumentMetadata(doc_type="profile", persona_type="professional"), high
        ) == 3.0
        assert compute_metadata_weight(DocumentMetadata(doc_type="photo"), low) == 0.1

    def test_zero_weight_excludes(self):
        ranking = RankingConfig(doc_type_weights={"photo": 0})
        assert is_excluded_by_weight(DocumentMetadata(doc_type="photo"), ranking)
        assert not is_excluded_by_weight(DocumentMetadata(doc_type="profile"), ranking)

    def test_rewrite_notion_url_points_to_site(self):
        url = f"https://www.notion.so/{NOTION_ID}"
        assert rewrite_notion_url(url, None, "https://site.dev/") == f"https://site.dev/{NOTION_ID}"

    def test_rewrite_keeps_other_hosts(self):
        assert rewrite_notion_url("example.org/a", "doc-1", "https://site.dev") == "https://example.org/a"
        assert rewrite_notion_url(None, "doc-1", "https://site.dev") == "https://site.dev/doc-1"
        assert rewrite_notion_url(None, None, "https://site.dev") is None

    def test_resolve_source_url_prefers_canonical_lookup(self):
        lookup = Mock()
        lookup.resolve.return_value = "https://site.dev/canonical"

        url = resolve_source_url("doc-1", "https://example.org/a", "https://site.dev", lookup)

        assert url == "https://site.dev/canonical"
        lookup.resolve.assert_called_once_with("doc-1")


class TestWeightedRetriever:
    """Tests for embedding, vector search and metadata enrichment."""

    @pytest.fixture
    def snapshot(self):
        return ChatConfigSnapshot(public_site_url="https://site.dev")

    @pytest.fixture
    def k(self):
        return normalize_rag_k(retrieve_k=5, final_k=5, rerank_enabled=False)

    def make_retriever(self, candidates, metadata=None):
        embedder = MagicMock()
        embedder.embed.return_value = [1.0, 0.0]
        store = MagicMock()
        store.search.return_value = candidates
        metadata_store = MagicMock()
        metadata_store.fetch_by_ids.return_value = metadata or {}
        return WeightedRetriever(embedder, store, metadata_store), embedder, store, metadata_store

    def test_retrieve_reweights_and_sorts(self, snapshot, k):
        """Test metadata weights reorder candidates by final score."""
        candidates = [
            Candidate(chunk_text="photo caption", raw_similarity=0.8, document_id="a"),
            Candidate(
                chunk_text="kb article",
                raw_similarity=0.7,
                document_id="b",
                raw_metadata={"doc_type": "kb_article"},
            ),
        ]
        retriever, embedder, store, metadata_store = self.make_retriever(
            candidates, {"a": DocumentMetadata(doc_id="a", doc_type="photo", title="Photo")}
        )

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        embedder.embed.assert_called_once()
        assert embedder.embed.call_args.args[0] == "q"
        assert store.search.call_args.args[1] == k.retrieve_k
        metadata_store.fetch_by_ids.assert_called_once()
        assert [c.document_id for c in outcome.enriched] == ["b", "a"]
        assert outcome.enriched[0].final_score == pytest.approx(0.7 * 1.1)
        assert outcome.enriched[1].final_score == pytest.approx(0.8 * 0.3)
        assert outcome.enriched[1].title == "Photo"
        assert outcome.enriched[1].source_url == "https://site.dev/a"
        assert outcome.query_embedding == [1.0, 0.0]

    def test_non_public_documents_dropped(self, snapshot, k):
        candidates = [
            Candidate(chunk_text="private", raw_similarity=0.9, raw_metadata={"doc_id": "p", "is_public": False}),
            Candidate(chunk_text="public", raw_similarity=0.5, document_id="q"),
        ]
        retriever, *_ = self.make_retriever(candidates)

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        assert [c.chunk_text for c in outcome.enriched] == ["public"]
        assert outcome.filtered_out == 1
        assert outcome.candidates_retrieved == 2

    def test_empty_pool_is_not_an_error(self, snapshot, k):
        retriever, *_ = self.make_retriever([])

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        assert outcome.enriched == []
        assert outcome.candidates_retrieved == 0

    def test_equal_scores_ordered_deterministically(self, snapshot, k):
        candidates = [
            Candidate(chunk_text="zeta", raw_similarity=0.5, document_id="z"),
            Candidate(chunk_text="alpha", raw_similarity=0.5, document_id="a"),
        ]
        retriever, *_ = self.make_retriever(candidates)

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        assert [c.chunk_text for c in outcome.enriched] == ["alpha", "zeta"]
        assert [c.retrieval_index for c in outcome.enriched] == [0, 1]

    def test_embedding_failure_is_fatal(self, snapshot, k):
        retriever, embedder, store, _ = self.make_retriever([])
        embedder.embed.side_effect = RuntimeError("503 upstream")

        with pytest.raises(EmbeddingError):
            retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)
        store.search.assert_not_called()

    def test_search_failure_is_fatal(self, snapshot, k):
        retriever, _, store, _ = self.make_retriever([])
        store.search.side_effect = ConnectionError("neo4j down")

        with pytest.raises(VectorSearchError):
            retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

    def test_metadata_failure_degrades_to_unweighted(self, snapshot, k):
        """Test a failing metadata fetch keeps candidates with default weight."""
        candidates = [Candidate(chunk_text="about me", raw_similarity=0.6, document_id="doc-1")]
        retriever, _, _, metadata_store = self.make_retriever(candidates)
        metadata_store.fetch_by_ids.side_effect = ConnectionError("neo4j down")

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        assert len(outcome.enriched) == 1
        assert outcome.enriched[0].metadata_weight == pytest.approx(1.0)
        assert outcome.enriched[0].final_score == pytest.approx(0.6)
        assert outcome.filtered_out == 0

    def test_canonical_lookup_failure_falls_back_to_rewrite(self, snapshot, k):
        """Test a failing page lookup falls back to the site URL for the doc."""
        candidates = [Candidate(chunk_text="about me", raw_similarity=0.6, document_id="doc-1")]
        retriever, *_ = self.make_retriever(candidates)
        lookup = MagicMock()
        lookup.resolve.side_effect = ConnectionError("neo4j down")
        retriever.canonical_lookup = lookup

        outcome = retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

        lookup.resolve.assert_called_with("doc-1")
        assert outcome.enriched[0].source_url == "https://site.dev/doc-1"

    def test_metadata_cancellation_passes_through(self, snapshot, k):
        candidates = [Candidate(chunk_text="about me", raw_similarity=0.6, document_id="doc-1")]
        retriever, _, _, metadata_store = self.make_retriever(candidates)
        metadata_store.fetch_by_ids.side_effect = PipelineCancelled("metadata")

        with pytest.raises(PipelineCancelled):
            retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)

    def test_cancellation_passes_through(self, snapshot, k):
        retriever, embedder, _, _ = self.make_retriever([])
        embedder.embed.side_effect = PipelineCancelled("embed")

        with pytest.raises(PipelineCancelled):
            retriever.retrieve(EnhancedQuery.build("q"), k, snapshot)


class TestEnrichAndFilter:
    """Tests for visibility and allow-list filtering."""

    def test_require_metadata_drops_unknown_documents(self):
        ranking = RankingConfig(require_metadata=True)
        candidates = [Candidate(chunk_text="orphan", raw_similarity=0.9)]

        enriched, filtered = enrich_and_filter(candidates, {}, ranking, "https://site.dev")

        assert enriched == []
        assert filtered == 1

    def test_allowed_doc_types(self):
        ranking = RankingConfig(allowed_doc_types=("kb_article",))
        candidates = [
            Candidate(chunk_text="kb", raw_similarity=0.5, raw_metadata={"doc_type": "kb_article"}),
            Candidate(chunk_text="blog", raw_similarity=0.9, raw_metadata={"doc_type": "blog_post"}),
        ]

        enriched, filtered = enrich_and_filter(candidates, {}, ranking, "https://site.dev")

        assert [c.chunk_text for c in enriched] == ["kb"]
        assert filtered == 1

    def test_zero_weight_type_filtered(self):
        ranking = RankingConfig(doc_type_weights={"photo": 0.0})
        candidates = [Candidate(chunk_text="pic", raw_similarity=0.9, raw_metadata={"doc_type": "photo"})]

        enriched, filtered = enrich_and_filter(candidates, {}, ranking, "https://site.dev")

        assert enriched == []
        assert filtered == 1

    def test_authoritative_metadata_overrides_chunk_metadata(self):
        candidates = [
            Candidate(
                chunk_text="text",
                raw_similarity=1.0,
                document_id="doc-1",
                raw_metadata={"title": "Stale", "doc_type": "other"},
            )
        ]
        metadata_map = {"doc-1": DocumentMetadata(doc_id="doc-1", title="Fresh", doc_type="profile")}

        enriched, _ = enrich_and_filter(candidates, metadata_map, RankingConfig(), "https://site.dev")

        assert enriched[0].title == "Fresh"
        assert enriched[0].doc_type == "profile"
        assert enriched[0].metadata_weight == pytest.approx(1.15)


class TestReranker:
    """Tests for ranking modes."""

    def test_none_truncates_and_ranks(self):
        candidates = [make_enriched(f"c{i}", 1.0 - i * 0.1, i) for i in range(5)]

        ranked = apply_ranker(candidates, "none", max_results=3)

        assert [c.chunk_text for c in ranked] == ["c0", "c1", "c2"]
        assert [c.rank for c in ranked] == [1, 2, 3]
        assert ranked[0].final_score == pytest.approx(1.0)

    def test_unknown_mode_fails_closed_to_none(self):
        candidates = [make_enriched("a", 0.9, 0), make_enriched("b", 0.8, 1)]

        ranked = apply_ranker(candidates, "quantum", max_results=1)

        assert [c.chunk_text for c in ranked] == ["a"]

    def test_empty_input(self):
        assert apply_ranker([], "mmr", max_results=3) == []

    def test_mmr_prefers_novel_candidates(self):
        """Test MMR skips a near-duplicate in favour of a diverse chunk."""
        candidates = [
            make_enriched("first", 0.9, 0, embedding=[1.0, 0.0]),
            make_enriched("duplicate", 0.9, 1, embedding=[1.0, 0.0]),
            make_enriched("diverse", 0.5, 2, embedding=[0.0, 1.0]),
        ]

        ranked = apply_ranker(
            candidates, "mmr", max_results=2, query_embedding=[1.0, 0.0], mmr_lambda=0.3
        )

        assert [c.chunk_text for c in ranked] == ["first", "diverse"]
        assert ranked[1].final_score == pytest.approx(0.5)

    def test_mmr_embeds_missing_vectors(self):
        candidates = [
            make_enriched("has", 0.9, 0, embedding=[1.0, 0.0]),
            make_enriched("missing", 0.8, 1),
        ]
        embedder = MagicMock()
        embedder.embed_many.return_value = [[0.9, 0.1]]

        ranked = apply_ranker(
            candidates, "mmr", max_results=2, query_embedding=[1.0, 0.0], embedder=embedder
        )

        embedder.embed_many.assert_called_once()
        assert embedder.embed_many.call_args.args[0] == ["missing"]
        assert len(ranked) == 2

    def test_mmr_failure_falls_back_to_vector_order(self):
        candidates = [make_enriched("a", 0.9, 0), make_enriched("b", 0.8, 1)]
        embedder = MagicMock()
        embedder.embed_many.side_effect = RuntimeError("embed failed")

        ranked = apply_ranker(
            candidates, "mmr", max_results=2, query_embedding=[1.0, 0.0], embedder=embedder
        )

        assert [c.chunk_text for c in ranked] == ["a", "b"]

    def test_select_mmr_skips_mismatched_dimensions(self):
        candidates = [make_enriched("bad", 0.9, 0), make_enriched("good", 0.8, 1)]

        selected = select_mmr(candidates, [1.0, 0.0], [[1.0, 0.0, 0.0], [1.0, 0.0]], 2)

        assert [c.chunk_text for c in selected] == ["good"]

    def test_remote_rerank_overwrites_scores(self):
        candidates = [make_enriched(f"c{i}", 0.5, i) for i in range(3)]
        reranker = MagicMock()
        reranker.rerank.return_value = [(2, 0.95), (0, 0.4)]

        ranked = apply_ranker(candidates, "rerank", max_results=2, query="q", reranker=reranker)

        assert [c.chunk_text for c in ranked] == ["c2", "c0"]
        assert [c.final_score for c in ranked] == [0.95, 0.4]
        assert reranker.rerank.call_args.args[:3] == ("q", ["c0", "c1", "c2"], 2)

    def test_remote_rerank_without_client_keeps_order(self):
        candidates = [make_enriched("a", 0.9, 0), make_enriched("b", 0.8, 1)]

        ranked = apply_ranker(candidates, "remote-rerank", max_results=5)

        assert [c.chunk_text for c in ranked] == ["a", "b"]

    def test_remote_rerank_failure_falls_back(self):
        candidates = [make_enriched("a", 0.9, 0), make_enriched("b", 0.8, 1)]
        reranker = MagicMock()
        reranker.rerank.side_effect = RuntimeError("429")

        ranked = apply_ranker(candidates, "remote-rerank", max_results=1, reranker=reranker)

        assert [c.chunk_text for c in ranked] == ["a"]

    def test_voyage_reranker_maps_results(self):
        client = MagicMock()
        client.rerank.return_value = Mock(
            results=[Mock(index=1, relevance_score=0.8), Mock(index=0, relevance_score=0.2)]
        )
        reranker = VoyageReranker(client=client, model="rerank-test")

        ordering = reranker.rerank("q", ["a", "b"], top_n=2)

        assert ordering == [(1, 0.8), (0, 0.2)]
        client.rerank.assert_called_once_with(
            query="q", documents=["a", "b"], model="rerank-test", top_k=2
        )
