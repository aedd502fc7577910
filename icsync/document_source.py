from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import requests

from icsync.errors import SourceUnavailableError
from icsync.models import SourceConfig


logger = logging.getLogger(__name__)


class DocumentSource(Protocol):
    def fetch(self, name: str) -> bytes | None:
        ...


class FolderDocumentSource:
    def __init__(self, folder: str) -> None:
        self.folder = Path(folder)

    def fetch(self, name: str) -> bytes | None:
        if not self.folder.is_dir():
            raise SourceUnavailableError(f"Source folder not found: {self.folder}")
        path = self.folder / name
        if not path.is_file():
            logger.error("File not found: %s", path)
            return None
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise SourceUnavailableError(f"Error reading {path}: {exc}") from exc
        logger.info("Successfully read calendar file: %s (%d bytes)", path, len(content))
        return content


class HttpDocumentSource:
    def __init__(self, base_url: str, timeout_seconds: int = 30, session: requests.Session | None = None) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _url(self, name: str) -> str:
        base = self.base_url.rstrip("/")
        if not name or base.endswith(f"/{name}"):
            return base
        return f"{base}/{name}"

    def fetch(self, name: str) -> bytes | None:
        url = self._url(name)
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise SourceUnavailableError(f"Error fetching {url}: {exc}") from exc
        if response.status_code == 404:
            logger.error("Calendar document not found: %s", url)
            return None
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise SourceUnavailableError(f"Error fetching {url}: {exc}") from exc
        logger.info("Successfully downloaded calendar document: %s (%d bytes)", url, len(response.content))
        return response.content


def build_document_source(config: SourceConfig) -> DocumentSource:
    if not config.location:
        raise SourceUnavailableError("Document source location is not configured.")
    if config.kind == "http":
        return HttpDocumentSource(config.location, timeout_seconds=config.timeout_seconds)
    return FolderDocumentSource(config.location)
