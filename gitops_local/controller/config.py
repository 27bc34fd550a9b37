"""Configuration for reconciling Applications."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

__all__ = ["ControllerConfig"]

DEFAULT_POLL_INTERVAL = 180.0
DEFAULT_SELF_HEAL_INTERVAL = 5.0
DEFAULT_APPLY_TIMEOUT = 60.0
DEFAULT_SYNC_TIMEOUT = 300.0
DEFAULT_HEALTH_GRACE_PERIOD = 120.0
DEFAULT_HEALTH_CHECK_INTERVAL = 2.0
DEFAULT_APPLY_CONCURRENCY = 10
DEFAULT_HISTORY_LIMIT = 10


@dataclass
class ControllerConfig:
    """Timing and concurrency settings for the ApplicationController."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    """Seconds between comparisons against a fresh fetch of desired state."""

    self_heal_interval: float = DEFAULT_SELF_HEAL_INTERVAL
    """Seconds between drift checks against the last synced desired state."""

    apply_timeout: float = DEFAULT_APPLY_TIMEOUT
    """Seconds allowed for a single apply or delete call."""

    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    """Seconds allowed for an entire sync operation."""

    health_grace_period: float = DEFAULT_HEALTH_GRACE_PERIOD
    """Seconds applied resources may stay Progressing before Degraded."""

    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL
    """Seconds between health checks while waiting for resources to settle."""

    apply_concurrency: int = DEFAULT_APPLY_CONCURRENCY
    """Number of concurrent cluster calls for one Application."""

    history_limit: int = DEFAULT_HISTORY_LIMIT
    """Number of sync history entries kept per Application."""

    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    """Used for retry backoff and health polling delays."""
