"""Git repository fetcher."""

import asyncio
import logging
from pathlib import Path
from typing import Any

import git

from gitops_local.exceptions import FetchError
from gitops_local.manifest import ApplicationSource, DEFAULT_REVISION

from .cache import RepoCache
from .fetcher import SourceFetcher
from .render import render_path

_LOGGER = logging.getLogger(__name__)


def _clone_or_update(url: str, repo_path: Path) -> git.Repo:
    """Clone the repository, or fetch new commits into an existing clone."""
    if (repo_path / ".git").exists():
        _LOGGER.debug("Fetching existing repository at %s", repo_path)
        repo = git.Repo(str(repo_path))
        repo.git.fetch("--tags", "--force", "--prune", "origin")
        return repo
    _LOGGER.info("Cloning repository %s to %s", url, repo_path)
    return git.Repo.clone_from(url, str(repo_path))


def _resolve_commit(repo: git.Repo, revision: str) -> str:
    """Resolve a branch, tag, commit or HEAD to a commit sha.

    Remote branches take precedence over tags of the same name.
    """
    if revision == DEFAULT_REVISION:
        candidates = ["origin/HEAD", "HEAD"]
    else:
        candidates = [f"origin/{revision}", f"refs/tags/{revision}", revision]
    for candidate in candidates:
        try:
            return str(repo.git.rev_parse("--verify", "--quiet", f"{candidate}^{{commit}}"))
        except git.exc.GitCommandError:
            continue
    raise FetchError(f"Unable to resolve revision '{revision}'")


class GitFetcher(SourceFetcher):
    """Fetches desired state from a git repository.

    Clones are kept in a RepoCache for the lifetime of the process. Renders
    check out the resolved commit in the cached clone, so all operations on
    the same repository are serialized.
    """

    def __init__(self, cache: RepoCache, enable_kustomize: bool = True) -> None:
        self._cache = cache
        self._enable_kustomize = enable_kustomize

    async def resolve(self, source: ApplicationSource, hard: bool = False) -> str:
        """Fetch the repository and resolve the target revision to a commit sha."""
        async with self._cache.lock(source.repo_url):
            repo_path = self._cache.get_repo_path(source.repo_url)
            try:
                if hard:
                    await asyncio.to_thread(self._cache.invalidate, source.repo_url)
                repo = await asyncio.to_thread(_clone_or_update, source.repo_url, repo_path)
                commit = await asyncio.to_thread(
                    _resolve_commit, repo, source.target_revision
                )
            except git.exc.GitError as err:
                raise FetchError(f"Git operation failed for {source.repo_url}: {err}") from err
            except OSError as err:
                raise FetchError(f"Failed to fetch repository {source.repo_url}: {err}") from err
        _LOGGER.info(
            "Resolved %s@%s to %s", source.repo_url, source.target_revision, commit
        )
        return commit

    async def render(self, source: ApplicationSource, revision: str) -> list[Any]:
        """Check out the revision and render the documents at the source path."""
        async with self._cache.lock(source.repo_url):
            repo_path = self._cache.get_repo_path(source.repo_url)
            if not (repo_path / ".git").exists():
                raise FetchError(f"Repository {source.repo_url} has not been fetched")
            try:
                repo = git.Repo(str(repo_path))
                await asyncio.to_thread(repo.git.checkout, "--force", "--detach", revision)
            except git.exc.GitError as err:
                raise FetchError(f"Unable to check out {revision}: {err}") from err
            path = (repo_path / source.path).resolve()
            if not path.is_relative_to(repo_path.resolve()):
                raise FetchError(f"Source path {source.path} is outside the repository")
            return await render_path(path, self._enable_kustomize)
