"""Cache management for cloned source repositories."""

import asyncio
import hashlib
import tempfile
import logging
from collections import defaultdict
from pathlib import Path
from shutil import rmtree
from urllib.parse import urlparse

from slugify import slugify

from gitops_local.exceptions import FetchError

_LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "gitops-local-cache"


class RepoCache:
    """Cache manager for cloned repositories.

    Each repository URL maps to one directory under the cache directory, named
    with a readable slug and a hash of the URL, e.g.
    `/tmp/gitops-local-cache/my-repo/ab1234567890abcd`. A lock per URL
    serializes git operations on the same clone.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or DEFAULT_CACHE_DIR
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        parsed = urlparse(url)
        path = parsed.path.rstrip("/")
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.split("/")[-1]
        # Handle SSH URLs (git@github.com:user/repo.git)
        if parsed.scheme == "" and "@" in url and ":" in url:
            slug = url.rsplit(":", 1)[1].rstrip("/").split("/")[-1].removesuffix(".git")
        return slugify(slug or "repo", max_length=50, lowercase=True, separator="-")

    def get_repo_path(self, url: str) -> Path:
        """Get the local path where a repository is cached."""
        cache_key = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        cache_path = self._cache_dir / self._slugify_url(url) / cache_key
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FetchError(f"Failed to create cache directory for {url}: {e}") from e
        return cache_path

    def lock(self, url: str) -> asyncio.Lock:
        """Return the lock guarding the clone of a repository."""
        return self._locks[url]

    def invalidate(self, url: str) -> None:
        """Drop the cached clone of a repository."""
        path = self.get_repo_path(url)
        if path.exists():
            _LOGGER.info("Removing cached repository: %s", path)
            rmtree(path)
