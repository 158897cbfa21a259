# =============================================================================
# Embedding Client — Text → Vector via an OpenAI-Compatible API
# =============================================================================
#
# Wraps the OpenAI SDK's embeddings endpoint. base_url is configurable, so
# any provider exposing the OpenAI embeddings API works unchanged.
#
# No retries here: the SDK is constructed with max_retries=0 and every
# failure surfaces as EmbeddingError. The job queue owns retry and backoff
# for the surrounding job, so there is exactly one backoff policy in play.
#
# TIMEOUTS:
# Each request carries an explicit timeout (settings.embedding_timeout_seconds).
# A timeout is reported as a retryable EmbeddingError like any other
# transport failure.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

import openai
from openai import OpenAI

from pdf_ingest.config import Settings, settings
from pdf_ingest.exceptions import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """
    Stateless per call and safe to share across worker threads (the OpenAI
    client manages its own connection pool).
    """

    def __init__(
        self,
        client: OpenAI,
        *,
        model: str = "text-embedding-3-small",
        dimensions: int | None = 1536,
        batch_size: int = 100,
    ) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self._batch_size = batch_size

    @property
    def model(self) -> str:
        return self._model

    def embed(self, text: str) -> list[float]:
        """
        Embed one text.

        Raises:
            EmbeddingError: transport, quota or malformed-response failure.
        """
        return self.embed_many([text])[0]

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed several texts, batching batch_size texts per request.
        Output order matches input order.
        """
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = list(texts[start : start + self._batch_size])
            vectors.extend(self._embed_batch(batch))

        logger.info(
            "Generated %d embeddings (model=%s, dimensions=%s)",
            len(vectors), self._model, self._dimensions,
        )
        return vectors

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        create_kwargs: dict = {"model": self._model, "input": batch}
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = self._client.embeddings.create(**create_kwargs)
        except openai.APITimeoutError as exc:
            raise EmbeddingError(f"Embedding request timed out (model={self._model})") from exc
        except openai.RateLimitError as exc:
            raise EmbeddingError(f"Embedding quota/rate limit exceeded: {exc}") from exc
        except openai.APIStatusError as exc:
            raise EmbeddingError(
                f"Embedding API returned HTTP {exc.status_code}: {exc.message}"
            ) from exc
        except openai.APIError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        data = getattr(response, "data", None) or []
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Malformed embedding response: expected {len(batch)} vectors, got {len(data)}"
            )

        ordered: list[list[float]] = [[] for _ in batch]
        for item in data:
            index = getattr(item, "index", None)
            if index is None or not 0 <= index < len(batch):
                raise EmbeddingError(f"Malformed embedding response: bad index {index!r}")
            ordered[index] = list(item.embedding)

        for vector in ordered:
            if not vector:
                raise EmbeddingError("Malformed embedding response: empty vector")
            if self._dimensions and len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"Malformed embedding response: expected {self._dimensions} "
                    f"dimensions, got {len(vector)}"
                )

        logger.debug(
            "Embedding batch complete: %d texts, %d prompt tokens",
            len(batch),
            response.usage.prompt_tokens if getattr(response, "usage", None) else 0,
        )
        return ordered


def build_embedding_client(config: Settings | None = None) -> EmbeddingClient:
    """
    Build the production client from settings.

    Raises:
        ValueError: no API key configured.
    """
    cfg = config or settings
    if not cfg.openai_api_key:
        raise ValueError(
            "No API key configured for embeddings. Set OPENAI_API_KEY in .env"
        )

    client_kwargs: dict = {
        "api_key": cfg.openai_api_key,
        "timeout": cfg.embedding_timeout_seconds,
        "max_retries": 0,
    }
    if cfg.embedding_base_url:
        client_kwargs["base_url"] = cfg.embedding_base_url

    logger.info(
        "Initialized embedding client (model=%s, base_url=%s)",
        cfg.embedding_model,
        cfg.embedding_base_url or "https://api.openai.com/v1",
    )
    return EmbeddingClient(
        OpenAI(**client_kwargs),
        model=cfg.embedding_model,
        dimensions=cfg.embedding_dimensions,
        batch_size=cfg.embedding_batch_size,
    )
