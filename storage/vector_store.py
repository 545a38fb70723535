"""Neo4j Vector Index store: nearest-neighbour search over chunk embeddings."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from core.config import settings
from core.errors import VectorSearchError
from core.models import Candidate

if TYPE_CHECKING:
    from neo4j import Driver

    from core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

INDEX_NAME = "document_chunk_embeddings"
NODE_LABEL = "DocumentChunk"
EMBEDDING_PROPERTY = "embedding"


def parse_metadata(raw: Any) -> dict:
    """Decode the JSON metadata property of a chunk node."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Chunk metadata is not valid JSON, ignoring: %r", raw)
        return {}
    return decoded if isinstance(decoded, dict) else {}


class VectorStore:
    """Neo4j-backed vector store with cosine similarity search."""

    def __init__(self, driver: Driver | None = None):
        if driver is None:
            from neo4j import GraphDatabase

            self._driver = GraphDatabase.driver(
                settings.neo4j_uri,
                auth=(settings.neo4j_user, settings.neo4j_password),
            )
        else:
            self._driver = driver

    def close(self) -> None:
        self._driver.close()

    def init_index(self) -> None:
        """Create vector index in Neo4j if it doesn't exist."""
        with self._driver.session() as session:
            session.run(
                f"""
                CREATE VECTOR INDEX {INDEX_NAME} IF NOT EXISTS
                FOR (n:{NODE_LABEL})
                ON (n.{EMBEDDING_PROPERTY})
                OPTIONS {{
                    indexConfig: {{
                        `vector.dimensions`: $dimensions,
                        `vector.similarity_function`: 'cosine'
                    }}
                }}
                """,
                dimensions=settings.embedding_dimensions,
            )
        logger.info("Vector index '%s' initialized", INDEX_NAME)

    def search(
        self,
        query_embedding: list[float],
        k: int,
        cancel: CancellationToken | None = None,
    ) -> list[Candidate]:
        """Return the `k` nearest chunks as candidates (k >= 1)."""
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        if cancel is not None:
            cancel.raise_if_cancelled("vector_search")

        try:
            with self._driver.session() as session:
                result = session.run(
                    f"""
                    CALL db.index.vector.queryNodes(
                        '{INDEX_NAME}', $top_k, $embedding
                    )
                    YIELD node, score
                    RETURN node.id AS id,
                           node.content AS content,
                           node.doc_id AS doc_id,
                           node.metadata AS metadata,
                           node.{EMBEDDING_PROPERTY} AS embedding,
                           score
                    ORDER BY score DESC
                    """,
                    top_k=k,
                    embedding=query_embedding,
                )

                candidates = []
                for i, record in enumerate(result):
                    metadata = parse_metadata(record["metadata"])
                    if record["id"]:
                        metadata.setdefault("chunk_id", record["id"])
                    candidates.append(
                        Candidate(
                            chunk_text=record["content"] or "",
                            raw_similarity=float(record["score"] or 0.0),
                            document_id=record["doc_id"],
                            raw_metadata=metadata,
                            retrieval_index=i,
                            embedding=list(record["embedding"] or []),
                        )
                    )
        except Exception as e:
            logger.error("Vector search failed: %s", e)
            raise VectorSearchError(
                f"Vector search failed: {e}", code=getattr(e, "code", None)
            ) from e

        if cancel is not None:
            cancel.raise_if_cancelled("vector_search")
        return candidates

    def count(self) -> int:
        """Return total number of chunks."""
        with self._driver.session() as session:
            result = session.run(
                f"MATCH (c:{NODE_LABEL}) RETURN count(c) AS total"
            )
            record = result.single()
            return record["total"] if record else 0
