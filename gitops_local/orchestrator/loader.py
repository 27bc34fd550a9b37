"""Application loader for the gitops-local command line tool.

This module provides the ApplicationLoader which reads Application
descriptors from the filesystem so they can be added to the store.

Key Characteristics:
- Handles basic YAML parsing of files holding one or more documents
- Documents of any kind other than Application are skipped
- A `repoURL` that is a relative local path is resolved against the
  directory of the file that declares it
- Stateless apart from remembering which files were already read
"""

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, AsyncGenerator

import yaml

from gitops_local.exceptions import GitOpsException, ValidationError
from gitops_local.manifest import Application, is_application
from gitops_local.source.fetcher import FILE_SCHEME, local_path

__all__ = ["ApplicationLoader", "LoadOptions"]

_LOGGER = logging.getLogger(__name__)

DESCRIPTOR_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class LoadOptions:
    """Options for loading Application descriptors.

    Attributes:
        path: Filesystem path to load descriptors from. Can be a file or directory.
        recursive: If True and path is a directory, load descriptors from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


def _resolve_repo_url(doc: dict[str, Any], base: Path) -> dict[str, Any]:
    """Make a relative local repoURL absolute, relative to the descriptor."""
    source = (doc.get("spec") or {}).get("source") or {}
    if not isinstance(repo_url := source.get("repoURL"), str):
        return doc
    if repo_url.startswith(f"{FILE_SCHEME}:"):
        return doc
    if (path := local_path(repo_url)) is None or path.is_absolute():
        return doc
    source["repoURL"] = str((base / path).resolve())
    return doc


class ApplicationLoader:
    """Loads Application descriptors from the filesystem."""

    def __init__(self) -> None:
        """Initialize the loader."""
        self._processed_files: set[Path] = set()

    async def load(self, options: LoadOptions) -> AsyncGenerator[Application, None]:
        """Load Applications from the given options.

        Args:
            options: Options for loading descriptors.

        Raises:
            GitOpsException: If the path cannot be read.
            ValidationError: If an Application document is malformed.
        """
        _LOGGER.info("Loading Applications from %s", options.path)

        if not options.path.exists():
            raise GitOpsException(f"Path does not exist: {options.path}")

        if options.path.is_file():
            async for app in self._load_file(options.path):
                yield app
        elif options.path.is_dir():
            async for app in self._load_directory(options.path, options):
                yield app
        else:
            raise GitOpsException(f"Path is not a file or directory: {options.path}")

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[Application, None]:
        _LOGGER.debug("Loading directory: %s", path)
        for entry in sorted(path.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.is_file() and entry.suffix.lower() in DESCRIPTOR_SUFFIXES:
                async for app in self._load_file(entry):
                    yield app
            elif options.recursive and entry.is_dir():
                async for app in self._load_directory(entry, options):
                    yield app

    async def _load_file(self, path: Path) -> AsyncGenerator[Application, None]:
        if path in self._processed_files:
            _LOGGER.debug("Skipping already processed file: %s", path)
            return
        _LOGGER.debug("Processing file: %s", path)
        self._processed_files.add(path)

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise GitOpsException(f"Failed to read file {path}: {e}") from e

        try:
            docs = [doc for doc in yaml.safe_load_all(content) if doc]
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in file {path}: {e}") from e

        for doc in docs:
            if not isinstance(doc, dict) or not is_application(doc):
                _LOGGER.debug("Skipping non-Application document in %s", path)
                continue
            try:
                app = Application.parse_doc(_resolve_repo_url(doc, path.parent))
            except ValidationError as e:
                raise ValidationError(f"Invalid Application in {path}: {e}") from e
            yield app
