"""
Embedding Gateway  —  Batch Embeddings with Retry & Timeout
═══════════════════════════════════════════════════════════

The gateway is the only network suspension point of chunking, ingestion and
search. Callers see two operations:

  embed_one(text)    → list[float]          (query time)
  embed_many(texts)  → list[list[float]]    (ingestion; order preserved)

Either returns vectors of exactly `dimensions` floats or raises
EmbeddingGatewayError. Partial results are never returned.

Batching strategy:
  OpenAI API: max 2048 inputs per call. We send `embedding_batch_size` texts
  per call (default 100) and run up to `embedding_max_concurrency` batch calls
  concurrently.

Retry policy:
  On RateLimitError / APIError (5xx) / APIConnectionError / timeout
      → wait RETRY_BASE_DELAY × 2^attempt (exponential, capped)
  On AuthenticationError / BadRequestError / PermissionDeniedError
      → fail immediately (not transient)
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import openai
from openai import AsyncOpenAI

from ragcore.core.config import Settings, settings
from ragcore.core.exceptions import EmbeddingGatewayError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

RETRY_BASE_DELAY = 2.0    # seconds: doubles each retry
RETRY_MAX_DELAY  = 60.0   # cap

NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    openai.AuthenticationError,
    openai.BadRequestError,
    openai.PermissionDeniedError,
)


# ---------------------------------------------------------------------------
# Abstract gateway
# ---------------------------------------------------------------------------

class EmbeddingGateway(ABC):
    """Text → fixed-dimension vector."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in order. len(result) == len(texts)."""
        ...

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        if len(vectors) != 1:
            raise EmbeddingGatewayError(f"Expected 1 embedding, got {len(vectors)}")
        return vectors[0]


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------

class OpenAIEmbeddingGateway(EmbeddingGateway):
    """
    One instance per process. The AsyncOpenAI client is created lazily and
    reused until aclose(); its connection pool belongs to the event loop that
    opened it, so the worker closes it at the end of every task.

    Usage:
        gateway = OpenAIEmbeddingGateway.from_settings()
        vectors = await gateway.embed_many(passages)
    """

    def __init__(
        self,
        model:           str   = "text-embedding-3-small",
        dimensions:      int   = 1536,
        api_key:         str   = "",
        batch_size:      int   = 100,
        max_concurrency: int   = 4,
        timeout:         float = 30.0,
        max_retries:     int   = 3,
        client:          Optional[AsyncOpenAI] = None,
    ) -> None:
        self._model           = model
        self._dimensions      = dimensions
        self._api_key         = api_key
        self._batch_size      = max(1, batch_size)
        self._max_concurrency = max(1, max_concurrency)
        self._timeout         = timeout
        self._max_retries     = max(0, max_retries)
        self._client          = client
        self._owns_client     = client is None

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "OpenAIEmbeddingGateway":
        return cls(
            model=s.embedding_model,
            dimensions=s.embedding_dimensions,
            api_key=s.openai_api_key,
            batch_size=s.embedding_batch_size,
            max_concurrency=s.embedding_max_concurrency,
            timeout=s.embedding_timeout_seconds,
            max_retries=s.embedding_max_retries,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            # SDK-level retries are disabled; back-off is handled here
            self._client = AsyncOpenAI(api_key=self._api_key or None, max_retries=0)
        return self._client

    async def aclose(self) -> None:
        """Close a client this gateway created; the next call builds a new one."""
        if self._client is None or not self._owns_client:
            return
        client, self._client = self._client, None
        await client.close()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results = await asyncio.gather(
            *(
                self._embed_batch_with_retry(batch, batch_idx, semaphore)
                for batch_idx, batch in enumerate(batches)
            ),
            return_exceptions=True,
        )

        vectors: list[list[float]] = []
        for batch_idx, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error("Embedding batch permanently failed | batch=%d error=%s", batch_idx, result)
                if isinstance(result, EmbeddingGatewayError):
                    raise result
                raise EmbeddingGatewayError(f"Embedding batch {batch_idx} failed: {result}") from result
            vectors.extend(result)

        logger.info(
            "Embeddings done | texts=%d batches=%d model=%s elapsed_ms=%.0f",
            len(texts), len(batches), self._model, (time.monotonic() - t0) * 1000,
        )
        return vectors

    # ------------------------------------------------------------------
    # Batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_batch_with_retry(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            async with semaphore:
                try:
                    vectors = await asyncio.wait_for(
                        self._call_openai(batch), timeout=self._timeout
                    )
                except NON_RETRYABLE_ERRORS as exc:
                    logger.error("Non-retryable embedding error | batch=%d error=%s", batch_idx, exc)
                    raise EmbeddingGatewayError(str(exc)) from exc
                except asyncio.TimeoutError as exc:
                    last_error = exc
                    logger.warning("Embedding timeout | batch=%d attempt=%d", batch_idx, attempt)
                    continue
                except openai.OpenAIError as exc:
                    last_error = exc
                    logger.warning(
                        "Retryable embedding error | batch=%d attempt=%d error=%s %s",
                        batch_idx, attempt, type(exc).__name__, exc,
                    )
                    continue

            self._validate(batch, vectors)
            return vectors

        raise EmbeddingGatewayError(
            f"Embedding batch {batch_idx} failed after {self._max_retries} retries: {last_error}"
        )

    def _validate(self, batch: list[str], vectors: list[list[float]]) -> None:
        if len(vectors) != len(batch):
            raise EmbeddingGatewayError(
                f"Expected {len(batch)} embeddings, got {len(vectors)}"
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingGatewayError(
                    f"Expected {self._dimensions} dimensions, got {len(vector)}"
                )

    async def _call_openai(self, batch: list[str]) -> list[list[float]]:
        """Single embeddings API call; results re-ordered by their index."""
        client = self._get_client()
        t_api = time.monotonic()

        kwargs = {"model": self._model, "input": batch}
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions
        response = await client.embeddings.create(**kwargs)

        logger.debug(
            "OpenAI embeddings | size=%d tokens=%s api_ms=%.0f",
            len(batch),
            response.usage.total_tokens if response.usage else "?",
            (time.monotonic() - t_api) * 1000,
        )
        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------

_gateway: Optional[EmbeddingGateway] = None


def get_embedding_gateway() -> EmbeddingGateway:
    global _gateway
    if _gateway is None:
        _gateway = OpenAIEmbeddingGateway.from_settings()
    return _gateway


async def close_embedding_gateway() -> None:
    if isinstance(_gateway, OpenAIEmbeddingGateway):
        await _gateway.aclose()
