"""Embedding and text-generation provider adapters (OpenAI)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from core.cancellation import CancellationToken, ensure_token
from core.config import settings
from core.errors import EmbeddingError

if TYPE_CHECKING:
    from openai import OpenAI

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str: ...


class Embedder(Protocol):
    def embed(self, text: str, cancel: CancellationToken | None = None) -> list[float]: ...

    def embed_many(
        self, texts: list[str], cancel: CancellationToken | None = None
    ) -> list[list[float]]: ...


def _default_client() -> OpenAI:
    from openai import OpenAI

    return OpenAI(api_key=settings.openai_api_key, timeout=settings.request_timeout)


class OpenAIGenerator:
    """Chat-completions backed text generator used for rewrite and HyDE."""

    def __init__(self, openai_client: OpenAI | None = None, model: str | None = None):
        self.openai_client = openai_client if openai_client is not None else _default_client()
        self.model = model or settings.llm_model

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        token = ensure_token(cancel)
        token.raise_if_cancelled("generate")

        kwargs = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        response = self.openai_client.chat.completions.create(**kwargs)
        token.raise_if_cancelled("generate")

        content = response.choices[0].message.content or ""
        return content.strip()


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings API.

    Provider failures surface as `EmbeddingError` carrying the HTTP status
    code when the client exposes one.
    """

    def __init__(self, openai_client: OpenAI | None = None, model: str | None = None):
        self.openai_client = openai_client if openai_client is not None else _default_client()
        self.model = model or settings.embedding_model

    def embed(self, text: str, cancel: CancellationToken | None = None) -> list[float]:
        return self.embed_many([text], cancel)[0]

    def embed_many(
        self, texts: list[str], cancel: CancellationToken | None = None
    ) -> list[list[float]]:
        token = ensure_token(cancel)
        token.raise_if_cancelled("embed")
        if not texts:
            return []

        try:
            response = self.openai_client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            status = getattr(e, "status_code", None)
            logger.error("Embedding request failed (status=%s): %s", status, e)
            raise EmbeddingError(
                f"Embedding provider failed: {e}",
                status_code=status,
                code=getattr(e, "code", None),
            ) from e

        token.raise_if_cancelled("embed")
        return [item.embedding for item in response.data]
