"""Gitops-local sync action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import sys
from typing import cast

from gitops_local.orchestrator import has_failed
from gitops_local.status import OperationPhase

from . import common
from .get import print_status

_LOGGER = logging.getLogger(__name__)


class SyncAction:
    """Sync an Application to its desired state."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Sync an Application",
                description=(
                    "Compare an Application against its source and apply any "
                    "out of sync resources, regardless of the sync policy"
                ),
            ),
        )
        common.add_app_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str,
        namespace: str | None,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        async with common.session(**kwargs) as current:
            application = current.find(app, namespace)
            status = await current.orchestrator.reconciler(application).sync()
        print_status(application, status)
        if has_failed(status) or (
            status.operation is not None
            and status.operation.phase != OperationPhase.SUCCEEDED
        ):
            sys.exit(1)
