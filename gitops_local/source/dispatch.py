"""Selection of a fetcher for an Application source."""

import logging
from typing import Any

from gitops_local.manifest import ApplicationSource

from .cache import RepoCache
from .fetcher import DirectoryFetcher, SourceConfig, SourceFetcher, local_path
from .git import GitFetcher

__all__ = ["DefaultFetcher"]

_LOGGER = logging.getLogger(__name__)


class DefaultFetcher(SourceFetcher):
    """Dispatches to a directory or git fetcher based on the repository URL.

    A local path that is not a git repository is read as a plain directory,
    everything else is cloned with git.
    """

    def __init__(self, config: SourceConfig | None = None) -> None:
        self._config = config or SourceConfig()
        self._directory = DirectoryFetcher(self._config.enable_kustomize)
        self._git = GitFetcher(
            RepoCache(self._config.cache_dir), self._config.enable_kustomize
        )

    def _select(self, source: ApplicationSource) -> SourceFetcher:
        if (path := local_path(source.repo_url)) is not None and not (
            path / ".git"
        ).exists():
            return self._directory
        return self._git

    async def resolve(self, source: ApplicationSource, hard: bool = False) -> str:
        fetcher = self._select(source)
        _LOGGER.debug("Resolving %s with %s", source.repo_url, type(fetcher).__name__)
        return await fetcher.resolve(source, hard)

    async def render(self, source: ApplicationSource, revision: str) -> list[Any]:
        return await self._select(source).render(source, revision)
