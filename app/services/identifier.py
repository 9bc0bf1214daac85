"""Recipient identifier extraction from payslip documents.

The extractor is a pluggable capability: anything with
``extract(content: bytes) -> str | None`` can be handed to the splitter.
Extraction is best effort. A document whose text cannot be read, or that has
no recognisable identifier, yields ``None``; the caller turns that into a
per-row failure rather than failing the whole batch.
"""
from __future__ import annotations

import io
import re
from typing import Optional, Protocol

from pypdf import PdfReader

from app.config import INGEST_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)


class IdentifierExtractor(Protocol):
    def extract(self, content: bytes) -> Optional[str]: ...


def build_identifier_pattern(tag: str, qualifier: str | None = None) -> re.Pattern[str]:
    """Match ``<TAG> [qualifier] [:] <code>``, e.g. "IPPIS Number: FTC96426"."""
    qualifier_part = rf"(?:{re.escape(qualifier)})?\s*" if qualifier else ""
    return re.compile(rf"{re.escape(tag)}\s*{qualifier_part}:?\s*([A-Z0-9]+)", re.IGNORECASE)


def match_identifier(text: str, pattern: re.Pattern[str], noise_token: str | None = None) -> Optional[str]:
    found = pattern.search(text or "")
    if not found:
        return None
    code = found.group(1)
    if noise_token:
        # First occurrence only; the noise token is glued to the end of the code cell
        code = code.replace(noise_token, "", 1)
    code = code.strip()
    return code or None


class PdfIdentifierExtractor:
    def __init__(
        self,
        *,
        tag: str | None = None,
        qualifier: str | None = None,
        noise_token: str | None = None,
    ) -> None:
        self.tag = str(tag or INGEST_SETTINGS["identifier_tag"])
        self.qualifier = qualifier if qualifier is not None else str(INGEST_SETTINGS["identifier_qualifier"])
        self.noise_token = noise_token if noise_token is not None else str(INGEST_SETTINGS["identifier_noise_token"])
        self._pattern = build_identifier_pattern(self.tag, self.qualifier)

    def _read_text(self, content: bytes) -> str:
        reader = PdfReader(io.BytesIO(content))
        pages: list[str] = []
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
        return "\n".join(pages)

    def extract(self, content: bytes) -> Optional[str]:
        try:
            text = self._read_text(content)
        except Exception as e:  # noqa: BLE001 - pypdf raises a wide range of parse errors
            logger.warning("Identifier extraction failed", error=str(e), error_type=type(e).__name__)
            return None
        return match_identifier(text, self._pattern, self.noise_token)


__all__ = [
    "IdentifierExtractor",
    "PdfIdentifierExtractor",
    "build_identifier_pattern",
    "match_identifier",
]
