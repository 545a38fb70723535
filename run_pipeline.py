#!/usr/bin/env python3
"""CLI for the RAG retrieval core: build a cited context for a question."""

import argparse
import json
import logging
import sys

from core.config import ChatConfigSnapshot, parse_ranker_mode, settings


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def load_history(path: str | None) -> list:
    """Read prior turns from a JSON file: [{"role": ..., "content": ...}, ...]."""
    from core.models import ChatMessage

    if not path:
        return []
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return [ChatMessage(**turn) for turn in data]


def cmd_ask(args: argparse.Namespace) -> None:
    """Run the full retrieval pipeline for one question."""
    from neo4j import GraphDatabase

    from core.cache import TTLMemoryCache
    from core.models import FeatureFlags, RetrievalRequest
    from pipeline.rag import run_rag
    from pipeline.stages import RagServices
    from pipeline.tracing import InMemoryCollector, Tracer
    from retrieval.providers import OpenAIEmbedder, OpenAIGenerator
    from retrieval.reranker import VoyageReranker
    from retrieval.retriever import WeightedRetriever
    from storage.metadata_store import CachedMetadataStore, CanonicalPageLookup, DocumentMetadataStore
    from storage.vector_store import VectorStore

    driver = GraphDatabase.driver(
        settings.neo4j_uri, auth=(settings.neo4j_user, settings.neo4j_password)
    )
    cache = TTLMemoryCache()
    embedder = OpenAIEmbedder()
    ranker_mode = parse_ranker_mode(args.ranker or settings.ranker_mode)

    services = RagServices(
        generator=OpenAIGenerator(),
        retriever=WeightedRetriever(
            embedder,
            VectorStore(driver),
            metadata_store=CachedMetadataStore(DocumentMetadataStore(driver), cache),
            canonical_lookup=CanonicalPageLookup(driver, cache),
        ),
        embedder=embedder,
        reranker=VoyageReranker() if ranker_mode == "remote-rerank" else None,
        cache=cache,
    )
    request = RetrievalRequest(
        question=args.question,
        history=tuple(load_history(args.history_file)),
        provider="openai",
        model=settings.llm_model,
        flags=FeatureFlags(
            reverse_rag_enabled=bool(args.reverse_rag) or settings.reverse_rag_enabled,
            reverse_rag_mode=args.reverse_rag or settings.reverse_rag_mode,
            hyde_enabled=args.hyde or settings.hyde_enabled,
            ranker_mode=ranker_mode,
        ),
        candidate_k=args.candidate_k,
    )

    collector = InMemoryCollector()
    tracer = Tracer(collector)
    try:
        result = run_rag(request, services, tracer=tracer)
    finally:
        tracer.close()
        driver.close()

    if args.json:
        embeddings = {"included": {"__all__": {"candidate": {"embedding"}}}}
        output = result.model_dump(mode="json", exclude={"context": embeddings})
        output["spans"] = [
            {"name": s.name, "duration_ms": round(s.duration_ms, 1), "output": s.output}
            for s in collector.spans
        ]
        print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
        return

    decision = result.decision
    print(f"Query: {args.question}")
    print(f"Intent: {decision.intent} ({decision.reason}, confidence {decision.confidence:.2f})")
    if result.k is not None:
        print(f"K: retrieve={result.k.retrieve_k} rerank={result.k.rerank_k} final={result.k.final_k}")
    print(f"\nContext ({result.context.total_tokens} tokens):\n{result.context.context_block}")

    if result.citations.citations:
        print(f"\n{result.citations.meta.message}")
        for i, doc in enumerate(result.citations.citations, 1):
            label = doc.title or doc.url or doc.doc_id or "untitled"
            print(f"  {i}. [{doc.normalized_score:3d}] {label}")
    if decision.insufficient and decision.intent == "knowledge":
        print("\nInsufficient evidence for a grounded answer.")


def cmd_k(args: argparse.Namespace) -> None:
    """Print the normalized K triple for the current configuration."""
    from retrieval.retriever import resolve_rag_k

    snapshot = ChatConfigSnapshot.from_settings()
    ranker_mode = parse_ranker_mode(args.ranker or settings.ranker_mode)
    k = resolve_rag_k(snapshot, args.candidate_k, ranker_mode)
    print(f"ranker={ranker_mode} retrieve_k={k.retrieve_k} rerank_k={k.rerank_k} final_k={k.final_k}")


def cmd_init_index(args: argparse.Namespace) -> None:
    """Create the Neo4j vector index."""
    from storage.vector_store import VectorStore

    store = VectorStore()
    store.init_index()
    print(f"Total chunks in store: {store.count()}")
    store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="RAG retrieval core CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ask
    p_ask = subparsers.add_parser("ask", help="Build a cited context for a question")
    p_ask.add_argument("question", help="Question to ask")
    p_ask.add_argument("--history-file", help="JSON file with prior conversation turns")
    p_ask.add_argument(
        "--reverse-rag", choices=["precision", "recall"],
        help="Enable reverse-RAG query rewriting in the given mode"
    )
    p_ask.add_argument("--hyde", action="store_true", help="Enable HyDE document synthesis")
    p_ask.add_argument("--ranker", help="Ranker mode: none, mmr or remote-rerank")
    p_ask.add_argument("--candidate-k", type=int, default=1, help="Candidate pool size hint")
    p_ask.add_argument("--json", action="store_true", help="Print the full result as JSON")

    # k
    p_k = subparsers.add_parser("k", help="Show normalized retrieval widths")
    p_k.add_argument("--ranker", help="Ranker mode: none, mmr or remote-rerank")
    p_k.add_argument("--candidate-k", type=int, default=1, help="Candidate pool size hint")

    # init-index
    subparsers.add_parser("init-index", help="Create the vector index")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "ask": cmd_ask,
        "k": cmd_k,
        "init-index": cmd_init_index,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
