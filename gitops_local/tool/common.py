"""Common utilities for gitops-local commands.

Every command loads the Application descriptors, restores the recorded
status and history from the state file, acts on the store and then writes
the state file back.
"""

import asyncio
from argparse import ArgumentParser
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
import pathlib
from typing import Any

from gitops_local.cluster import KubectlCluster, KubectlConfig
from gitops_local.controller import ClusterFactory
from gitops_local.manifest import Application
from gitops_local.orchestrator import Orchestrator, OrchestratorConfig
from gitops_local.store import InMemoryStore
from gitops_local.store.state_file import StateFile, read_state, write_state
from gitops_local.task import task_service_context

_LOGGER = logging.getLogger(__name__)

DEFAULT_STATE_FILE = pathlib.Path(".gitops-local-state.yaml")


def add_app_flags(args: ArgumentParser) -> None:
    """Add flags selecting a single Application."""
    args.add_argument("app", help="Name of the Application")
    args.add_argument(
        "--namespace",
        "-n",
        default=None,
        help="Namespace of the Application, required only when the name is ambiguous",
    )


def build_cluster_factory(
    kube_context: str | None = None,
    kubeconfig: str | None = None,
    **kwargs: Any,
) -> ClusterFactory:
    """Return the factory for the destination cluster of each Application."""
    config = KubectlConfig(context=kube_context, kubeconfig=kubeconfig)

    def factory(app: Application) -> KubectlCluster:
        return KubectlCluster.for_server(config, app.destination.server)

    return factory


@dataclass
class Session:
    """The state loaded for a single command invocation."""

    store: InMemoryStore
    orchestrator: Orchestrator
    state_file: pathlib.Path
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def find(self, name: str, namespace: str | None = None) -> Application:
        """Return the Application with the name, raising ApplicationNotFound."""
        return self.store.find_application(name, namespace)

    async def save(self) -> None:
        """Record the status and history of every Application."""
        async with self._lock:
            await write_state(self.state_file, StateFile.snapshot(self.store))


@asynccontextmanager
async def session(
    path: pathlib.Path | None = None,
    state_file: pathlib.Path | None = None,
    save: bool = True,
    **kwargs: Any,
) -> AsyncGenerator[Session, None]:
    """Load Applications and recorded state, saving the state on exit.

    Tasks started during the command are tracked by a task service scoped
    to the session.
    """
    with task_service_context():
        async with _session(path, state_file, save, **kwargs) as current:
            yield current


@asynccontextmanager
async def _session(
    path: pathlib.Path | None,
    state_file: pathlib.Path | None,
    save: bool,
    **kwargs: Any,
) -> AsyncGenerator[Session, None]:
    store = InMemoryStore()
    orchestrator = Orchestrator(
        store,
        OrchestratorConfig(),
        cluster_factory=build_cluster_factory(**kwargs),
    )
    await orchestrator.load(path or pathlib.Path("."))
    state_path = state_file or DEFAULT_STATE_FILE
    state = await read_state(state_path)
    state.restore(store)
    current = Session(store=store, orchestrator=orchestrator, state_file=state_path)
    try:
        yield current
    finally:
        if save:
            await current.save()
