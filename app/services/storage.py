"""Document storage for persisted payslip PDFs.

Locators are batch scoped (``<folder>/<file name>``) and relative to the
storage root, so the physical backend can change without rewriting rows.
"""
from __future__ import annotations

import posixpath
import re
from pathlib import Path
from typing import Protocol

from app.config import STORAGE_SETTINGS

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class DocumentStorage(Protocol):
    def save(self, content: bytes, file_name: str, folder: str) -> str: ...
    def load(self, locator: str) -> bytes: ...
    def delete(self, locator: str) -> None: ...


def safe_component(value: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or "document"


def build_locator(folder: str, file_name: str) -> str:
    return posixpath.join(safe_component(folder), safe_component(file_name))


class LocalDocumentStorage:
    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root if root is not None else STORAGE_SETTINGS["root"])

    def _path(self, locator: str) -> Path:
        return self.root.joinpath(*locator.split("/"))

    def save(self, content: bytes, file_name: str, folder: str) -> str:
        locator = build_locator(folder, file_name)
        path = self._path(locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return locator

    def load(self, locator: str) -> bytes:
        return self._path(locator).read_bytes()

    def delete(self, locator: str) -> None:
        """Remove a stored document; a missing file is not an error."""
        self._path(locator).unlink(missing_ok=True)


__all__ = ["DocumentStorage", "LocalDocumentStorage", "build_locator", "safe_component"]
