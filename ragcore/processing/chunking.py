"""
Semantic Chunker  —  Embedding-Guided Text Segmentation
═══════════════════════════════════════════════════════

Approach
────────
  1. Base split: RecursiveCharacterTextSplitter (300 chars, 50 overlap) cuts
     the text at paragraph → line → sentence → word boundaries.
  2. Every base segment is embedded in one batched gateway call.
  3. Adjacent segments are merged greedily while the cosine similarity of the
     running accumulator and the next segment stays above 0.6 and the merged
     text stays within 1000 chars. The accumulator's embedding becomes the
     element-wise average of the two (no re-embedding).
  4. Passages shorter than 50 chars are dropped, unless only one passage
     exists.

Failure handling
────────────────
  Any error in steps 1–4 (gateway down, wrong vector count, non-finite
  similarity) falls back to a plain 1000/200 character split that needs no
  embeddings. The fallback itself never raises; it returns [] if even that
  fails.

Output is always an ordered list of non-empty strings.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragcore.core.config import Settings, settings
from ragcore.core.exceptions import EmbeddingGatewayError
from ragcore.processing.embeddings import EmbeddingGateway

logger = logging.getLogger(__name__)

# Paragraph → line → sentence → word → character
BASE_SEPARATORS: list[str] = ["\n\n", "\n", ". ", "! ", "? ", " ", ""]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkerConfig:
    min_content_chars:    int = 100
    base_size:            int = 300
    base_overlap:         int = 50
    similarity_threshold: float = 0.6
    max_merged_chars:     int = 1000
    min_passage_chars:    int = 50
    fallback_size:        int = 1000
    fallback_overlap:     int = 200

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "ChunkerConfig":
        return cls(
            min_content_chars=s.chunk_min_content_chars,
            base_size=s.chunk_base_size,
            base_overlap=s.chunk_base_overlap,
            similarity_threshold=s.chunk_similarity_threshold,
            max_merged_chars=s.chunk_max_merged_chars,
            min_passage_chars=s.chunk_min_passage_chars,
            fallback_size=s.chunk_fallback_size,
            fallback_overlap=s.chunk_fallback_overlap,
        )


# ---------------------------------------------------------------------------
# Vector math
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    dot(a, b) / (|a| * |b|).

    Returns 0.0 for a zero-norm vector or mismatched dimensions. NaN/inf
    components propagate as a non-finite result.
    """
    if len(a) != len(b) or not a:
        return 0.0
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    dot = math.fsum(x * y for x, y in zip(a, b))
    return dot / (norm_a * norm_b)


def _average(a: Sequence[float], b: Sequence[float]) -> list[float]:
    return [(x + y) / 2.0 for x, y in zip(a, b)]


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class SemanticChunker:
    """
    Stateless semantic text chunker.

    Usage:
        chunker = SemanticChunker(gateway)
        passages = await chunker.chunk(extracted_text)
    """

    def __init__(
        self,
        gateway: EmbeddingGateway,
        config:  ChunkerConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or ChunkerConfig.from_settings()
        self._base_splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.base_size,
            chunk_overlap=self._config.base_overlap,
            separators=BASE_SEPARATORS,
        )

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    async def chunk(self, content: str) -> list[str]:
        if not content or not content.strip():
            return []

        text = content.strip()
        if len(text) < self._config.min_content_chars:
            return [text]

        try:
            passages = await self._semantic_split(text)
        except Exception as exc:
            logger.warning(
                "Semantic chunking failed, using fixed windows | chars=%d error=%s",
                len(text), exc,
            )
            return self._fixed_window_split(text)

        logger.info(
            "SemanticChunker | chars=%d passages=%d avg_chars=%.0f",
            len(text), len(passages),
            sum(len(p) for p in passages) / max(1, len(passages)),
        )
        return passages

    # ------------------------------------------------------------------
    # Semantic path
    # ------------------------------------------------------------------

    async def _semantic_split(self, text: str) -> list[str]:
        segments = [s for s in self._base_splitter.split_text(text) if s.strip()]
        if len(segments) <= 1:
            return segments

        embeddings = await self._gateway.embed_many(segments)
        if len(embeddings) != len(segments):
            raise EmbeddingGatewayError(
                f"Expected {len(segments)} embeddings, got {len(embeddings)}"
            )

        merged = self._merge_by_similarity(segments, embeddings)
        passages = self._drop_tiny(merged)
        return passages or merged or segments

    def _merge_by_similarity(
        self,
        segments:   list[str],
        embeddings: Sequence[Sequence[float]],
    ) -> list[str]:
        cfg = self._config
        merged: list[str] = []

        acc_text = segments[0]
        acc_vec: list[float] = list(embeddings[0])

        for seg_text, seg_vec in zip(segments[1:], embeddings[1:]):
            similarity = cosine_similarity(acc_vec, seg_vec)
            if not math.isfinite(similarity):
                raise ValueError(f"Non-finite similarity: {similarity}")

            candidate = f"{acc_text} {seg_text}"
            if similarity > cfg.similarity_threshold and len(candidate) <= cfg.max_merged_chars:
                acc_text = candidate
                acc_vec = _average(acc_vec, seg_vec)
            else:
                merged.append(acc_text)
                acc_text = seg_text
                acc_vec = list(seg_vec)

        merged.append(acc_text)
        return merged

    def _drop_tiny(self, passages: list[str]) -> list[str]:
        if len(passages) <= 1:
            return passages
        return [p for p in passages if len(p) >= self._config.min_passage_chars]

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _fixed_window_split(self, text: str) -> list[str]:
        """Plain character split with overlap; never raises."""
        try:
            splitter = RecursiveCharacterTextSplitter(
                chunk_size=self._config.fallback_size,
                chunk_overlap=self._config.fallback_overlap,
            )
            return [p for p in splitter.split_text(text) if p.strip()]
        except Exception:
            logger.exception("Fallback chunking failed | chars=%d", len(text))
            return []
