"""
Text Extraction
═══════════════

Turns raw upload bytes into plain text:

  .pdf        → pypdf, pages joined with "\n\n"
  .docx       → python-docx, non-empty paragraphs joined with "\n"
  .txt / .md  → UTF-8, falling back to latin-1

Parsing is CPU-bound, so extract() runs the parser in a worker thread.
Unsupported extensions and corrupt files raise ExtractionError; an empty
result is returned as "" and judged by the caller.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os

import docx
from pypdf import PdfReader

from ragcore.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".docx", ".txt", ".md"})


class TextExtractor:
    """Stateless; one instance can be shared by every worker task."""

    async def extract(self, data: bytes, filename: str) -> str:
        return await asyncio.to_thread(self.extract_sync, data, filename)

    def extract_sync(self, data: bytes, filename: str) -> str:
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise ExtractionError(f"Unsupported file type: {ext or filename!r}")

        try:
            if ext == ".pdf":
                text = _extract_pdf(data)
            elif ext == ".docx":
                text = _extract_docx(data)
            else:
                text = _decode_text(data)
        except Exception as exc:
            logger.warning("Text extraction failed | ext=%s error=%s", ext, exc)
            raise ExtractionError(f"Could not parse {ext} file: {exc}") from exc

        logger.debug("Extracted | ext=%s bytes=%d chars=%d", ext, len(data), len(text))
        return text


def _extract_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in document.paragraphs if para.text.strip())


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")
