"""Gitops-local diff action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import sys
from typing import cast

from gitops_local.diff import (
    perform_json_diff,
    perform_unified_diff,
    perform_yaml_diff,
)
from gitops_local.status import SyncStatus

from . import common

_LOGGER = logging.getLogger(__name__)

DIFF_OUTPUTS = {
    "diff": perform_unified_diff,
    "yaml": perform_yaml_diff,
    "json": perform_json_diff,
}


class DiffAction:
    """Diff the desired state of an Application against the cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff an Application against the cluster",
                description=(
                    "The diff command renders the desired state of an Application "
                    "and prints its difference with the live state. Exits with "
                    "status 1 when there are differences."
                ),
            ),
        )
        common.add_app_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=list(DIFF_OUTPUTS),
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="output NUM (default 3) lines of unified context",
        )
        args.add_argument(
            "--limit-bytes",
            help="Maximum bytes for each diff output (0=unlimited)",
            type=int,
            default=0,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str,
        namespace: str | None,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        async with common.session(save=False, **kwargs) as current:
            application = current.find(app, namespace)
            result = await current.orchestrator.reconciler(application).compare()
        for line in DIFF_OUTPUTS[output](result, unified, limit_bytes):
            print(line)
        if result.sync_status != SyncStatus.SYNCED:
            sys.exit(1)
