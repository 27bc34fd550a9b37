"""Orchestrator for gitops-local.

This module provides the orchestrator that loads Application descriptors into
the store and runs the ApplicationController against them, either for a
single pass or until cancelled. It also hands out Reconcilers for the one
shot command line operations that act on a single Application.
"""

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path

from gitops_local.cluster import KubectlCluster, KubectlConfig
from gitops_local.controller import (
    ApplicationController,
    ClusterFactory,
    ControllerConfig,
    Reconciler,
)
from gitops_local.manifest import Application, NamedResource
from gitops_local.source import DefaultFetcher, SourceConfig, SourceFetcher
from gitops_local.status import ApplicationPhase, ApplicationStatus, ConditionType
from gitops_local.store import Store
from gitops_local.task import get_task_service

from .loader import ApplicationLoader, LoadOptions

__all__ = ["Orchestrator", "OrchestratorConfig", "has_failed"]

_LOGGER = logging.getLogger(__name__)

FAILURE_CONDITIONS = {
    ConditionType.FETCH_ERROR,
    ConditionType.VALIDATION_ERROR,
    ConditionType.APPLY_ERROR,
}


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    controller_config: ControllerConfig = field(default_factory=ControllerConfig)
    source_config: SourceConfig = field(default_factory=SourceConfig)
    kubectl_config: KubectlConfig = field(default_factory=KubectlConfig)


def has_failed(status: ApplicationStatus | None) -> bool:
    """Return true if a status reports a failed fetch, validation, apply or sync."""
    if status is None:
        return False
    if status.phase == ApplicationPhase.DEGRADED:
        return True
    return any(c.type in FAILURE_CONDITIONS for c in status.conditions)


class Orchestrator:
    """Orchestrator for loading Applications and reconciling them.

    The orchestrator is responsible for:
    - Loading Application descriptors into the store
    - Managing the lifecycle of the ApplicationController
    - Building the fetcher and cluster shared by every Application
    """

    def __init__(
        self,
        store: Store,
        config: OrchestratorConfig | None = None,
        cluster_factory: ClusterFactory | None = None,
        fetcher: SourceFetcher | None = None,
    ) -> None:
        """Initialize the orchestrator."""
        self.store = store
        self.config = config or OrchestratorConfig()
        self.fetcher = fetcher or DefaultFetcher(self.config.source_config)
        self._cluster_factory = cluster_factory or self._kubectl_cluster
        self._reconcilers: dict[NamedResource, Reconciler] = {}
        self.controller: ApplicationController | None = None

    def _kubectl_cluster(self, app: Application) -> KubectlCluster:
        return KubectlCluster.for_server(self.config.kubectl_config, app.destination.server)

    async def load(self, path: Path) -> list[Application]:
        """Load Application descriptors from a file or directory into the store."""
        loader = ApplicationLoader()
        apps = []
        async for app in loader.load(LoadOptions(path=path)):
            _LOGGER.debug("Loaded Application %s", app.namespaced_name)
            self.store.add_application(app)
            apps.append(app)
        _LOGGER.info("Loaded %d Application(s) from %s", len(apps), path)
        return apps

    def reconciler(self, app: Application) -> Reconciler:
        """Return the Reconciler for a single Application."""
        if (reconciler := self._reconcilers.get(app.resource_id)) is None:
            reconciler = Reconciler(
                app.resource_id,
                self.store,
                self.fetcher,
                self._cluster_factory(app),
                self.config.controller_config,
            )
            self._reconcilers[app.resource_id] = reconciler
        return reconciler

    async def start(self) -> None:
        """Start the controller."""
        if self.controller is not None:
            return
        _LOGGER.info("Starting orchestrator")
        self.controller = ApplicationController(
            self.store,
            self.fetcher,
            self._cluster_factory,
            self.config.controller_config,
        )

    async def stop(self) -> None:
        """Stop the controller and wait for outstanding tasks."""
        if self.controller is None:
            return
        _LOGGER.info("Stopping orchestrator")
        await self.controller.close()
        await get_task_service().block_till_done()
        self.controller = None
        _LOGGER.info("Orchestrator stopped")

    def has_failed_applications(self) -> bool:
        """Return true if the status of any Application reports a failure."""
        return any(
            has_failed(self.store.get_status(app.resource_id))
            for app in self.store.list_applications()
        )

    async def run(self, once: bool = False) -> bool:
        """Run the controller.

        With once set, every Application gets a single reconcile pass and the
        controller stops. Otherwise it runs until cancelled.

        Returns:
            bool: True if no Application reported a failure.
        """
        await self.start()
        assert self.controller is not None
        try:
            if once:
                await asyncio.gather(
                    *(
                        self.controller.wait_idle(app.resource_id)
                        for app in self.store.list_applications()
                    )
                )
            else:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            _LOGGER.info("Orchestrator was cancelled")
            raise
        finally:
            await self.stop()
        return not self.has_failed_applications()
