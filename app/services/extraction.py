"""Upload extraction: turn one uploaded file into candidate payslip documents.

Rules:
1. A filename ending in ``.zip`` is a container. Entries are walked in archive
   order; ``.pdf`` entries become documents, ``.zip`` entries are unpacked
   recursively, everything else (directories, images, spreadsheets) is ignored.
2. Nested entries are tagged ``<container>::<child>`` so two ``payslip.pdf``
   files in different inner archives never collide.
3. Archive-bomb guards: nesting depth (top-level archive = depth 1) and the
   aggregate decompressed size across every level are bounded. The declared
   size is checked before reading and the real size after.
4. Anything unreadable (bad ZIP, entry that fails to decompress, document
   without a PDF signature) raises CorruptInputError. The ingest job treats
   that as fatal for the whole batch.
5. Each document goes through the splitter (1..N parts) and each part through
   the identifier extractor. A missing identifier is replaced by the fallback
   sentinel so that resolution still runs and fails with a clear reason.
"""
from __future__ import annotations

import io
import posixpath
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Protocol

from app.config import EXTRACTION_SETTINGS, INGEST_SETTINGS
from app.services.errors import ArchiveLimitError, CorruptInputError
from app.services.identifier import IdentifierExtractor
from app.utils import get_logger

logger = get_logger(__name__)

PDF_SIGNATURE = b"%PDF-"
ORIGIN_SEPARATOR = "::"


@dataclass(slots=True)
class Candidate:
    """One document extracted from an upload, before recipient resolution."""
    identifier: str
    content: bytes
    origin: str
    identified: bool = True

    def release(self) -> None:
        self.content = b""


@dataclass(slots=True)
class _ExtractionBudget:
    max_depth: int
    max_total_bytes: int
    consumed_bytes: int = 0

    def reserve(self, size: int, origin: str) -> None:
        if self.consumed_bytes + size > self.max_total_bytes:
            raise ArchiveLimitError(
                f"Archive exceeds decompressed size limit of {self.max_total_bytes} bytes at '{origin}'",
                details={"origin": origin, "limit_bytes": self.max_total_bytes},
            )
        self.consumed_bytes += size


@dataclass(slots=True)
class _Document:
    origin: str
    content: bytes = field(repr=False)


class DocumentSplitter(Protocol):
    def split(self, content: bytes, origin: str) -> List[bytes]: ...


class WholeDocumentSplitter:
    """Treat every uploaded document as exactly one payslip."""

    def split(self, content: bytes, origin: str) -> List[bytes]:
        return [content]


def is_container(filename: str) -> bool:
    return filename.lower().endswith(".zip")


def is_document(filename: str) -> bool:
    return filename.lower().endswith(".pdf")


def _check_pdf(content: bytes, origin: str) -> None:
    # Some generators prepend a few whitespace bytes before the header
    if PDF_SIGNATURE not in content[:1024]:
        raise CorruptInputError(f"'{origin}' is not a readable PDF document", details={"origin": origin})


def _walk_container(content: bytes, *, prefix: str | None, depth: int, budget: _ExtractionBudget) -> Iterator[_Document]:
    if depth > budget.max_depth:
        raise ArchiveLimitError(
            f"Archive nesting exceeds depth limit of {budget.max_depth} at '{prefix}'",
            details={"origin": prefix, "max_depth": budget.max_depth},
        )
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except (zipfile.BadZipFile, zlib.error, OSError, ValueError) as e:
        label = prefix or "upload"
        raise CorruptInputError(f"Failed to extract ZIP archive '{label}': {e}", details={"origin": label}) from e

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            entry_path = info.filename.replace("\\", "/").strip("/")
            name = posixpath.basename(entry_path)
            if not name or not (is_document(name) or is_container(name)):
                continue
            # Origins use the full entry path, so they are unique within one archive
            origin = f"{prefix}{ORIGIN_SEPARATOR}{entry_path}" if prefix else entry_path
            budget.reserve(info.file_size, origin)
            try:
                member = archive.read(info)
            except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError, ValueError) as e:
                raise CorruptInputError(f"Failed to read archive entry '{origin}': {e}", details={"origin": origin}) from e
            # Declared sizes can lie; account for what was actually inflated
            if len(member) > info.file_size:
                budget.reserve(len(member) - info.file_size, origin)

            if is_container(name):
                yield from _walk_container(member, prefix=origin, depth=depth + 1, budget=budget)
            else:
                yield _Document(origin=origin, content=member)


def iter_documents(content: bytes, filename: str, *, max_depth: int | None = None, max_total_bytes: int | None = None) -> Iterator[_Document]:
    if not is_container(filename):
        _check_pdf(content, filename)
        yield _Document(origin=filename, content=content)
        return
    budget = _ExtractionBudget(
        max_depth=int(max_depth if max_depth is not None else EXTRACTION_SETTINGS["max_depth"]),
        max_total_bytes=int(max_total_bytes if max_total_bytes is not None else EXTRACTION_SETTINGS["max_total_uncompressed_bytes"]),
    )
    for document in _walk_container(content, prefix=None, depth=1, budget=budget):
        _check_pdf(document.content, document.origin)
        yield document


def split_upload(
    content: bytes,
    filename: str,
    *,
    extractor: IdentifierExtractor,
    splitter: Optional[DocumentSplitter] = None,
    fallback_identifier: str | None = None,
    max_depth: int | None = None,
    max_total_bytes: int | None = None,
) -> List[Candidate]:
    """Extract every candidate payslip from an upload, in archive order."""
    splitter = splitter or WholeDocumentSplitter()
    fallback = str(fallback_identifier or INGEST_SETTINGS["fallback_identifier"])
    candidates: List[Candidate] = []

    for document in iter_documents(content, filename, max_depth=max_depth, max_total_bytes=max_total_bytes):
        parts = splitter.split(document.content, document.origin)
        for index, part in enumerate(parts):
            origin = document.origin if len(parts) == 1 else f"{document.origin}#{index + 1}"
            identifier = extractor.extract(part)
            if identifier is None:
                logger.warning("No identifier found in document, using fallback", origin=origin, fallback=fallback)
                candidates.append(Candidate(identifier=fallback, content=part, origin=origin, identified=False))
            else:
                candidates.append(Candidate(identifier=identifier, content=part, origin=origin))

    logger.info("Upload extracted", filename=filename, candidates=len(candidates))
    return candidates


__all__ = [
    "Candidate",
    "DocumentSplitter",
    "WholeDocumentSplitter",
    "split_upload",
    "iter_documents",
    "is_container",
    "is_document",
]
