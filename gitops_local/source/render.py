"""Rendering of a directory of manifests into desired state documents."""

import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from gitops_local import command
from gitops_local.exceptions import (
    CommandException,
    FetchError,
    KustomizeException,
    ValidationError,
)
from gitops_local.manifest import expand_lists

__all__ = ["render_path", "manifest_files"]

_LOGGER = logging.getLogger(__name__)

KUSTOMIZE_BIN = "kustomize"
KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def manifest_files(path: Path) -> list[Path]:
    """Return the manifest files under a directory, recursively in sorted order.

    Hidden files and directories are skipped.
    """
    if not path.is_dir():
        raise FetchError(f"Path does not exist or is not a directory: {path}")
    result = []
    for entry in sorted(path.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            result.extend(manifest_files(entry))
        elif entry.suffix.lower() in MANIFEST_SUFFIXES:
            result.append(entry)
    return result


def is_kustomization(path: Path) -> bool:
    """Return true if the directory is the root of a kustomization."""
    return any((path / name).exists() for name in KUSTOMIZATION_FILES)


def _load_all(content: str, origin: str) -> list[Any]:
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as err:
        raise ValidationError(f"{origin} failed to parse as yaml: {err}") from err
    return expand_lists(docs)


async def _kustomize_build(path: Path) -> list[Any]:
    cmd = command.Command([KUSTOMIZE_BIN, "build", str(path)], exc=KustomizeException)
    try:
        out = await command.run(cmd)
    except FileNotFoundError as err:
        raise FetchError(f"Unable to run {KUSTOMIZE_BIN}: {err}") from err
    except CommandException as err:
        raise ValidationError(f"Failed to build kustomization {path}: {err}") from err
    return _load_all(out, f"kustomize build {path}")


async def render_path(path: Path, enable_kustomize: bool = True) -> list[Any]:
    """Render the documents of the desired state at a path.

    A kustomization root is built with `kustomize build`, any other
    directory is read file by file.
    """
    if not path.is_dir():
        raise FetchError(f"Path does not exist or is not a directory: {path}")
    if enable_kustomize and is_kustomization(path):
        _LOGGER.debug("Building kustomization at %s", path)
        return await _kustomize_build(path)

    docs: list[Any] = []
    for file in manifest_files(path):
        try:
            async with aiofiles.open(file, encoding="utf-8") as manifest_file:
                content = await manifest_file.read()
        except OSError as err:
            raise FetchError(f"Failed to read file {file}: {err}") from err
        except UnicodeDecodeError as err:
            raise ValidationError(f"`{file}` is not valid UTF-8: {err}") from err
        docs.extend(_load_all(content, f"`{file}`"))
    _LOGGER.debug("Rendered %d documents from %s", len(docs), path)
    return docs
