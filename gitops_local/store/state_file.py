"""Persistence of Application status and history between command invocations.

The state file is a yaml document written by the command line tool so that
commands like `history` can report on syncs performed by earlier runs.
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import cast

import aiofiles
import aiofiles.os

from gitops_local.manifest import BaseManifest, NamedResource, APPLICATION_KIND
from gitops_local.status import ApplicationStatus, SyncHistoryEntry
from gitops_local.exceptions import GitOpsException

from .store import Store

__all__ = [
    "ApplicationState",
    "StateFile",
    "read_state",
    "write_state",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ApplicationState(BaseManifest):
    """The recorded status and history of a single Application."""

    name: str
    namespace: str
    status: ApplicationStatus | None = None
    history: list[SyncHistoryEntry] = field(default_factory=list)

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(kind=APPLICATION_KIND, namespace=self.namespace, name=self.name)


@dataclass
class StateFile(BaseManifest):
    """Holds the state of all Applications."""

    applications: list[ApplicationState] = field(default_factory=list)

    def restore(self, store: Store) -> None:
        """Load recorded status and history into the store.

        Only Applications already present in the store are restored.
        """
        for state in self.applications:
            if store.get_application(state.resource_id) is None:
                _LOGGER.debug("Skipping state of unknown Application %s", state.resource_id)
                continue
            if state.status is not None:
                store.update_status(state.resource_id, state.status)
            for entry in state.history:
                store.add_history(state.resource_id, entry, limit=0)

    @classmethod
    def snapshot(cls, store: Store) -> "StateFile":
        """Capture the status and history of every Application in the store."""
        return cls(
            applications=[
                ApplicationState(
                    name=app.name,
                    namespace=app.namespace,
                    status=store.get_status(app.resource_id),
                    history=store.get_history(app.resource_id),
                )
                for app in store.list_applications()
            ]
        )


async def read_state(state_path: Path) -> StateFile:
    """Return the contents of a state file, or an empty state if it does not exist."""
    if not await aiofiles.os.path.exists(str(state_path)):
        return StateFile()
    async with aiofiles.open(str(state_path)) as state_file:
        content = await state_file.read()
    if not content.strip():
        return StateFile()
    try:
        return cast(StateFile, StateFile.parse_yaml(content))
    except Exception as err:
        raise GitOpsException(f"Invalid state file {state_path}: {err}") from err


async def write_state(state_path: Path, state: StateFile) -> None:
    """Write the state file only if changed.

    The content goes to a temporary file next to the state file which then
    replaces it, so readers never see a partially written file.
    """
    new_content = state.yaml()
    if await aiofiles.os.path.exists(str(state_path)):
        async with aiofiles.open(str(state_path)) as state_file:
            if await state_file.read() == new_content:
                return
    tmp_path = state_path.with_name(f".{state_path.name}.tmp")
    try:
        async with aiofiles.open(str(tmp_path), mode="w") as state_file:
            await state_file.write(new_content)
        await aiofiles.os.replace(str(tmp_path), str(state_path))
    except OSError:
        if await aiofiles.os.path.exists(str(tmp_path)):
            await aiofiles.os.remove(str(tmp_path))
        raise
