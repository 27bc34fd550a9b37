"""
Application Controller implementation.

The controller watches the store for Applications and runs one ScheduledJob
per Application. Each job has two periodic timers: a poll that compares the
Application against a fresh fetch of its source, and a drift check against
the desired state of the last sync. Refresh and sync requests trigger the job
explicitly, and a failed fetch schedules a delayed retry.

Applications share nothing but the cluster: a failing pass is logged by its
job and never affects the jobs of other Applications.
"""

import asyncio
from collections.abc import Callable
import logging

from gitops_local.cluster import Cluster
from gitops_local.exceptions import ApplicationNotFound
from gitops_local.manifest import Application, NamedResource
from gitops_local.source import SourceArtifact, SourceFetcher
from gitops_local.status import ApplicationPhase, ApplicationStatus
from gitops_local.store import Store, StoreEvent
from gitops_local.task import ScheduledJob, get_task_service

from .config import ControllerConfig
from .reconciler import (
    DRIFT,
    FETCH_RETRY,
    HARD_REFRESH,
    POLL,
    REFRESH,
    SYNC,
    Reconciler,
)

__all__ = ["ApplicationController", "ClusterFactory"]

_LOGGER = logging.getLogger(__name__)

ClusterFactory = Callable[[Application], Cluster]

BUSY_PHASES = {ApplicationPhase.COMPARING, ApplicationPhase.SYNCING}


class ApplicationController:
    """Controller for reconciling Applications.

    The controller starts watching the store as soon as it is created and
    must be closed to stop every job.
    """

    def __init__(
        self,
        store: Store,
        fetcher: SourceFetcher,
        cluster_factory: ClusterFactory,
        config: ControllerConfig | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            store: The central store holding Applications and their status
            fetcher: Fetches desired state for Application sources
            cluster_factory: Returns the destination cluster of an Application
            config: Timing and concurrency settings
        """
        self._store = store
        self._fetcher = fetcher
        self._cluster_factory = cluster_factory
        self._config = config or ControllerConfig()
        self._jobs: dict[NamedResource, ScheduledJob] = {}
        self._task_service = get_task_service()
        self._tasks: list[asyncio.Task[None]] = [
            self._task_service.create_background_task(
                self._watch_applications(), name="watch-applications"
            )
        ]
        self._remove_listener = store.add_listener(
            StoreEvent.APPLICATION_REMOVED, self._on_removed
        )

    async def close(self) -> None:
        """Stop watching the store and stop every job."""
        _LOGGER.info("Closing ApplicationController, stopping jobs")
        self._remove_listener()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        jobs = list(self._jobs.values())
        self._jobs.clear()
        await asyncio.gather(*(job.stop() for job in jobs))

    async def _watch_applications(self) -> None:
        """Start a job for each Application added to the store."""
        _LOGGER.info("Watching for Application objects in the store")
        async for resource_id, app in self._store.watch_added():
            if (job := self._jobs.get(resource_id)) is not None:
                _LOGGER.info("Application %s changed, refreshing", resource_id)
                job.trigger(REFRESH)
                continue
            self._start(resource_id, app)

    def _start(self, resource_id: NamedResource, app: Application) -> None:
        reconciler = Reconciler(
            resource_id,
            self._store,
            self._fetcher,
            self._cluster_factory(app),
            self._config,
        )
        job: ScheduledJob

        async def run_pass(reasons: frozenset[str]) -> None:
            retry_after = await reconciler.reconcile(reasons)
            if retry_after is not None:
                job.trigger_later(retry_after, FETCH_RETRY)

        job = ScheduledJob(resource_id.namespaced_name, run_pass, self._task_service)
        job.every(self._config.poll_interval, POLL, immediate=True)
        job.every(self._config.self_heal_interval, DRIFT)
        self._jobs[resource_id] = job
        _LOGGER.info("Starting reconciliation of Application %s", resource_id)
        job.start()

    def _on_removed(self, resource_id: NamedResource, app: Application) -> None:
        if (job := self._jobs.pop(resource_id, None)) is None:
            return
        _LOGGER.info("Application %s removed, stopping its job", resource_id)
        self._task_service.create_task(job.stop(), name=f"stop-{job.name}")

    def _job(self, resource_id: NamedResource) -> ScheduledJob:
        if (job := self._jobs.get(resource_id)) is None:
            raise ApplicationNotFound(f"Application {resource_id} is not being reconciled")
        return job

    def refresh(self, resource_id: NamedResource, hard: bool = False) -> None:
        """Request a comparison against the source.

        A hard refresh also drops the rendered desired state so the source is
        fetched and rendered again. A sync that is already running is not
        interrupted.
        """
        job = self._job(resource_id)
        if hard:
            self._store.clear_artifact(resource_id, SourceArtifact)
        job.trigger(HARD_REFRESH if hard else REFRESH)

    def sync(self, resource_id: NamedResource) -> None:
        """Request a sync, regardless of the sync policy."""
        self._job(resource_id).trigger(SYNC)

    async def wait_idle(self, resource_id: NamedResource) -> ApplicationStatus | None:
        """Wait until no pass is running or pending for an Application.

        An Application added to the store is picked up by the watcher
        asynchronously, so this also waits for its job to start.
        """
        while (job := self._jobs.get(resource_id)) is None:
            if self._store.get_application(resource_id) is None:
                raise ApplicationNotFound(f"Application {resource_id} not found")
            await asyncio.sleep(0)
        await job.wait_idle()
        return self._store.get_status(resource_id)

    async def wait_ready(self, resource_id: NamedResource) -> ApplicationStatus:
        """Wait for the first pass of an Application to publish a settled phase."""
        return await self._store.watch_status(
            resource_id,
            lambda status: status.reconciled_at is not None
            and status.phase not in BUSY_PHASES,
        )

    @property
    def applications(self) -> list[NamedResource]:
        """Applications with a running job."""
        return list(self._jobs)
