"""Gitops-local refresh action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import sys
from typing import cast

from gitops_local.controller.reconciler import HARD_REFRESH, REFRESH
from gitops_local.orchestrator import has_failed
from gitops_local.status import ApplicationStatus

from . import common
from .get import print_status

_LOGGER = logging.getLogger(__name__)


class RefreshAction:
    """Compare an Application against its source."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "refresh",
                help="Refresh the status of an Application",
                description=(
                    "Fetch the source of an Application and compare it against "
                    "the cluster. An automated Application is synced when out "
                    "of sync."
                ),
            ),
        )
        common.add_app_flags(args)
        args.add_argument(
            "--hard",
            default=False,
            action=BooleanOptionalAction,
            help="Discard any cached copy of the source before fetching",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str,
        namespace: str | None,
        hard: bool,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        async with common.session(**kwargs) as current:
            application = current.find(app, namespace)
            reconciler = current.orchestrator.reconciler(application)
            await reconciler.reconcile(frozenset({HARD_REFRESH if hard else REFRESH}))
            status = current.store.get_status(application.resource_id) or ApplicationStatus()
        print_status(application, status)
        if has_failed(status):
            sys.exit(1)
