"""Gitops-local run action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import sys
from typing import Any, cast

from gitops_local.controller.config import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SELF_HEAL_INTERVAL,
)
from gitops_local.manifest import NamedResource
from gitops_local.store import StoreEvent
from gitops_local.task import get_task_service

from . import common
from .get import status_summary
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Run the controller for every Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Reconcile all Applications continuously",
                description=(
                    "Run the reconciliation loop for every Application found in "
                    "the path until interrupted"
                ),
            ),
        )
        args.add_argument(
            "--once",
            default=False,
            action=BooleanOptionalAction,
            help="Reconcile each Application once then exit",
        )
        args.add_argument(
            "--poll-interval",
            type=float,
            default=DEFAULT_POLL_INTERVAL,
            help="Seconds between comparisons against the source",
        )
        args.add_argument(
            "--self-heal-interval",
            type=float,
            default=DEFAULT_SELF_HEAL_INTERVAL,
            help="Seconds between drift checks against the last sync",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        once: bool,
        poll_interval: float,
        self_heal_interval: float,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        async with common.session(**kwargs) as current:
            controller_config = current.orchestrator.config.controller_config
            controller_config.poll_interval = poll_interval
            controller_config.self_heal_interval = self_heal_interval
            task_service = get_task_service()

            def on_history(resource_id: NamedResource, entry: Any) -> None:
                task_service.create_task(current.save(), name="save-state")

            remove = current.store.add_listener(StoreEvent.HISTORY_ADDED, on_history)
            try:
                succeeded = await current.orchestrator.run(once=once)
            finally:
                remove()
            summary = [
                status_summary(app, status)
                for app in current.store.list_applications()
                if (status := current.store.get_status(app.resource_id)) is not None
            ]
        PrintFormatter().print(summary)
        if not succeeded:
            sys.exit(1)
