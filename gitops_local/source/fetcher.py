"""Desired-state fetchers.

A fetcher resolves the target revision of an Application source and renders
the manifest tree at that revision. Resolution is cheap relative to
rendering, which lets the reconciler reuse previously rendered documents
while the revision is unchanged.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiofiles

from gitops_local.exceptions import FetchError
from gitops_local.manifest import ApplicationSource

from .render import manifest_files, render_path

__all__ = ["SourceFetcher", "SourceConfig", "DirectoryFetcher"]

_LOGGER = logging.getLogger(__name__)

FILE_SCHEME = "file"


@dataclass
class SourceConfig:
    """Configuration for fetching desired state."""

    cache_dir: Path | None = None
    """Directory for cloned repositories, a temporary directory by default."""

    enable_kustomize: bool = True
    """Build kustomization roots with `kustomize build`."""


class SourceFetcher(ABC):
    """Fetches desired state documents for an Application source."""

    @abstractmethod
    async def resolve(self, source: ApplicationSource, hard: bool = False) -> str:
        """Resolve the target revision of the source.

        When hard is set any cached copy of the source is discarded first.

        Raises:
            FetchError: If the source is unreachable.
        """

    @abstractmethod
    async def render(self, source: ApplicationSource, revision: str) -> list[Any]:
        """Render the documents at the source path for a resolved revision.

        Raises:
            FetchError: If the source cannot be read.
            ValidationError: If the documents cannot be parsed.
        """


def local_path(repo_url: str) -> Path | None:
    """Return the local path of a `file://` URL or plain path, else None."""
    parsed = urlparse(repo_url)
    if parsed.scheme == FILE_SCHEME:
        return Path(parsed.path)
    if parsed.scheme == "" and "@" not in repo_url:
        return Path(repo_url)
    return None


class DirectoryFetcher(SourceFetcher):
    """Fetches desired state from a plain local directory.

    The revision is a content hash of the manifest files, so any edit to
    the directory is seen as a new revision.
    """

    def __init__(self, enable_kustomize: bool = True) -> None:
        self._enable_kustomize = enable_kustomize

    def _path(self, source: ApplicationSource) -> Path:
        if (root := local_path(source.repo_url)) is None:
            raise FetchError(f"Not a local directory: {source.repo_url}")
        return root / source.path

    async def resolve(self, source: ApplicationSource, hard: bool = False) -> str:
        """Hash the contents of the manifest files at the source path."""
        path = self._path(source)
        digest = hashlib.sha256()
        try:
            for file in manifest_files(path):
                digest.update(str(file.relative_to(path)).encode("utf-8"))
                async with aiofiles.open(file, "rb") as manifest_file:
                    digest.update(await manifest_file.read())
        except OSError as err:
            raise FetchError(f"Failed to read {path}: {err}") from err
        return digest.hexdigest()[:16]

    async def render(self, source: ApplicationSource, revision: str) -> list[Any]:
        """Render the documents at the source path."""
        return await render_path(self._path(source), self._enable_kustomize)
