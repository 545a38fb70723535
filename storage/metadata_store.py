"""Authoritative document metadata and canonical page URLs stored in Neo4j."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from core.cache import Cache, NullCache
from core.config import settings
from core.models import DocumentMetadata
from retrieval.metadata import canonical_doc_id, canonicalize_metadata
from storage.vector_store import parse_metadata

if TYPE_CHECKING:
    from neo4j import Driver

logger = logging.getLogger(__name__)

DOCUMENT_LABEL = "RagDocument"

_NOT_FOUND = "__not_found__"


class MetadataSource(Protocol):
    def fetch_by_ids(self, ids: list[str]) -> dict[str, DocumentMetadata]: ...


class DocumentMetadataStore:
    """Batch lookup of document metadata in a single round trip."""

    def __init__(self, driver: Driver):
        self._driver = driver

    def fetch_by_ids(self, ids: list[str]) -> dict[str, DocumentMetadata]:
        if not ids:
            return {}

        with self._driver.session() as session:
            result = session.run(
                f"""
                MATCH (d:{DOCUMENT_LABEL})
                WHERE d.doc_id IN $ids
                RETURN d.doc_id AS doc_id, d.metadata AS metadata
                """,
                ids=list(ids),
            )
            rows = list(result)

        metadata_map: dict[str, DocumentMetadata] = {}
        for record in rows:
            doc_id = canonical_doc_id(record["doc_id"])
            if doc_id is None:
                continue
            raw = parse_metadata(record["metadata"])
            raw.setdefault("doc_id", doc_id)
            metadata = canonicalize_metadata(raw)
            if metadata is not None:
                metadata_map[doc_id] = metadata

        logger.debug("Fetched metadata for %d/%d documents", len(metadata_map), len(ids))
        return metadata_map


class CachedMetadataStore:
    """Read-through cache in front of a metadata source.

    Misses are cached too, so unknown ids do not hit the store on every request.
    """

    def __init__(self, source: MetadataSource, cache: Cache | None = None, ttl: float | None = None):
        self.source = source
        self.cache = cache if cache is not None else NullCache()
        self.ttl = settings.metadata_cache_ttl if ttl is None else ttl

    @staticmethod
    def _key(doc_id: str) -> str:
        return f"doc-meta:{doc_id}"

    def fetch_by_ids(self, ids: list[str]) -> dict[str, DocumentMetadata]:
        found: dict[str, DocumentMetadata] = {}
        missing: list[str] = []
        for doc_id in dict.fromkeys(ids):
            cached = self.cache.get(self._key(doc_id))
            if cached is None:
                missing.append(doc_id)
            elif cached != _NOT_FOUND:
                found[doc_id] = cached

        if missing:
            fetched = self.source.fetch_by_ids(missing)
            for doc_id in missing:
                value = fetched.get(doc_id)
                self.cache.set(self._key(doc_id), value if value is not None else _NOT_FOUND, self.ttl)
                if value is not None:
                    found[doc_id] = value

        return found


class CanonicalPageLookup:
    """Resolves a document id to its public canonical URL, with caching."""

    def __init__(self, driver: Driver, cache: Cache | None = None, ttl: float | None = None):
        self._driver = driver
        self.cache = cache if cache is not None else NullCache()
        self.ttl = settings.canonical_cache_ttl if ttl is None else ttl

    @staticmethod
    def _key(doc_id: str) -> str:
        return f"canonical:{doc_id}"

    def resolve(self, raw_id: str) -> str | None:
        doc_id = canonical_doc_id(raw_id)
        if doc_id is None:
            return None

        cached = self.cache.get(self._key(doc_id))
        if cached is not None:
            return None if cached == _NOT_FOUND else cached

        with self._driver.session() as session:
            record = session.run(
                f"""
                MATCH (d:{DOCUMENT_LABEL} {{doc_id: $doc_id}})
                RETURN d.canonical_url AS canonical_url
                """,
                doc_id=doc_id,
            ).single()

        url = record["canonical_url"] if record else None
        self.cache.set(self._key(doc_id), url or _NOT_FOUND, self.ttl)
        return url or None

    def refresh(self) -> int:
        """Reload every canonical URL into the cache. Safe to run in the background."""
        with self._driver.session() as session:
            result = session.run(
                f"""
                MATCH (d:{DOCUMENT_LABEL})
                WHERE d.canonical_url IS NOT NULL
                RETURN d.doc_id AS doc_id, d.canonical_url AS canonical_url
                """
            )
            rows = list(result)

        count = 0
        for record in rows:
            doc_id = canonical_doc_id(record["doc_id"])
            if doc_id and record["canonical_url"]:
                self.cache.set(self._key(doc_id), record["canonical_url"], self.ttl)
                count += 1
        logger.info("Refreshed %d canonical page URLs", count)
        return count
