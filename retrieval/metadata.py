"""Document metadata canonicalization, URL resolution and metadata weighting.

Vector-index hits and the document table use several key spellings for the
same field. `canonicalize_metadata` is the single place that maps a raw
record onto `DocumentMetadata`; everything downstream reads the schema.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from core.errors import PipelineCancelled
from core.models import DocumentMetadata

if TYPE_CHECKING:
    from core.config import RankingConfig
    from storage.metadata_store import CanonicalPageLookup

logger = logging.getLogger(__name__)

DOC_ID_KEYS = ("doc_id", "docId", "page_id", "pageId", "document_id", "documentId")
SOURCE_URL_KEYS = ("source_url", "sourceUrl", "url")
TITLE_KEYS = ("title",)
SOURCE_TYPE_KEYS = ("source_type", "sourceType")
DOC_TYPE_KEYS = ("doc_type", "docType")
PERSONA_TYPE_KEYS = ("persona_type", "personaType")
IS_PUBLIC_KEYS = ("is_public", "isPublic")

_CONSUMED_KEYS = set(
    DOC_ID_KEYS
    + SOURCE_URL_KEYS
    + TITLE_KEYS
    + SOURCE_TYPE_KEYS
    + DOC_TYPE_KEYS
    + PERSONA_TYPE_KEYS
    + IS_PUBLIC_KEYS
    + ("tags", "document_meta", "schema_version")
)

DOC_TYPE_WEIGHTS: dict[str, float] = {
    "profile": 1.15,
    "project_article": 1.15,
    "kb_article": 1.1,
    "blog_post": 1.0,
    "insight_note": 0.95,
    "other": 0.9,
    "photo": 0.3,
}

PERSONA_WEIGHTS: dict[str, float] = {
    "professional": 1.1,
    "hybrid": 1.0,
    "personal": 0.95,
}


def _first_string(raw: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_page_id(page_id: str | None) -> str | None:
    """Return the 32-char dashless lowercase form of a Notion page id, else None."""
    if not page_id or not isinstance(page_id, str):
        return None
    stripped = page_id.replace("-", "").strip().lower()
    if len(stripped) != 32:
        return None
    return stripped


def canonical_doc_id(raw_id: str | None) -> str | None:
    """Normalize a document id: Notion ids lose dashes and case, others are trimmed."""
    if not raw_id or not isinstance(raw_id, str) or not raw_id.strip():
        return None
    return normalize_page_id(raw_id) or raw_id.strip()


def normalize_tags(tags: Any) -> tuple[str, ...]:
    if not isinstance(tags, (list, tuple, set)):
        return ()
    cleaned = set()
    for tag in tags:
        if isinstance(tag, bool):
            continue
        if isinstance(tag, str) and tag.strip():
            cleaned.add(tag.strip())
        elif isinstance(tag, (int, float)):
            cleaned.add(str(tag))
    return tuple(sorted(cleaned))


def _known_or_none(value: str | None, known: Mapping[str, float], field: str) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in known:
        logger.debug("Unknown %s %r treated as missing", field, value)
        return None
    return normalized


def canonicalize_metadata(raw: Mapping[str, Any] | DocumentMetadata | None) -> DocumentMetadata | None:
    """Map an arbitrary metadata record onto the canonical schema.

    Returns None for empty input. Unknown keys are kept in `extra`.
    """
    if raw is None:
        return None
    if isinstance(raw, DocumentMetadata):
        return raw
    if not isinstance(raw, Mapping) or not raw:
        return None

    title = _first_string(raw, TITLE_KEYS)
    nested = raw.get("document_meta")
    if title is None and isinstance(nested, Mapping):
        title = _first_string(nested, TITLE_KEYS)

    is_public = None
    for key in IS_PUBLIC_KEYS:
        if isinstance(raw.get(key), bool):
            is_public = raw[key]
            break

    return DocumentMetadata(
        doc_id=canonical_doc_id(_first_string(raw, DOC_ID_KEYS)),
        title=title,
        source_url=_first_string(raw, SOURCE_URL_KEYS),
        source_type=_first_string(raw, SOURCE_TYPE_KEYS),
        doc_type=_known_or_none(_first_string(raw, DOC_TYPE_KEYS), DOC_TYPE_WEIGHTS, "doc_type"),
        persona_type=_known_or_none(
            _first_string(raw, PERSONA_TYPE_KEYS), PERSONA_WEIGHTS, "persona_type"
        ),
        is_public=is_public,
        tags=normalize_tags(raw.get("tags")),
        extra={k: v for k, v in raw.items() if k not in _CONSUMED_KEYS},
    )


def ensure_absolute_url(url: str) -> str:
    if not url or url.startswith("http://") or url.startswith("https://"):
        return url
    return "https://" + url.lstrip("/")


def rewrite_notion_url(source_url: str | None, doc_id: str | None, site_url: str) -> str | None:
    """Point Notion-hosted URLs at the public site; pass other URLs through."""
    base = site_url.rstrip("/")
    if not source_url:
        return f"{base}/{doc_id}" if doc_id else None

    absolute = ensure_absolute_url(source_url)
    parsed = urlparse(absolute)
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return absolute

    segments = [segment for segment in parsed.path.split("/") if segment]
    derived = doc_id or (normalize_page_id(segments[-1]) if segments else None)
    if derived and ("notion.so" in hostname or "notion.site" in hostname):
        return f"{base}/{derived}"
    return absolute


def resolve_source_url(
    doc_id: str | None,
    source_url: str | None,
    site_url: str,
    canonical_lookup: CanonicalPageLookup | None = None,
) -> str | None:
    """Canonical page URL first, then a Notion rewrite, then the raw URL."""
    if doc_id and canonical_lookup is not None:
        try:
            canonical = canonical_lookup.resolve(doc_id)
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning("Canonical page lookup failed for %s: %s", doc_id, e)
            canonical = None
        if canonical:
            return canonical
    return rewrite_notion_url(source_url, doc_id, site_url)


def _type_weight(value: str | None, overrides: Mapping[str, float], defaults: Mapping[str, float]) -> float:
    if not value:
        return 1.0
    if value in overrides:
        return overrides[value]
    return defaults.get(value, 1.0)


def is_excluded_by_weight(metadata: DocumentMetadata | None, ranking: RankingConfig | None) -> bool:
    """True when the doc or persona type is configured with a weight <= 0."""
    if metadata is None or ranking is None:
        return False
    if metadata.doc_type and ranking.doc_type_weights.get(metadata.doc_type, 1.0) <= 0:
        return True
    if metadata.persona_type and ranking.persona_type_weights.get(metadata.persona_type, 1.0) <= 0:
        return True
    return False


def compute_metadata_weight(
    metadata: DocumentMetadata | None, ranking: RankingConfig | None = None
) -> float:
    """Doc-type weight times persona weight, clamped to the configured range."""
    doc_overrides = ranking.doc_type_weights if ranking else {}
    persona_overrides = ranking.persona_type_weights if ranking else {}
    low = ranking.weight_min if ranking else 0.1
    high = ranking.weight_max if ranking else 3.0

    doc_type = metadata.doc_type if metadata else None
    persona_type = metadata.persona_type if metadata else None
    weight = _type_weight(doc_type, doc_overrides, DOC_TYPE_WEIGHTS) * _type_weight(
        persona_type, persona_overrides, PERSONA_WEIGHTS
    )
    return min(high, max(low, weight))
