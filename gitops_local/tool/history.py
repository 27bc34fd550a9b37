"""Gitops-local history action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast

from . import common
from .format import STRUCT_FORMATTERS, PrintFormatter

_LOGGER = logging.getLogger(__name__)

COLUMNS = ["id", "revision", "initiated_by", "phase", "started_at", "finished_at", "message"]


class HistoryAction:
    """Show the sync history of an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "history",
                help="Show the sync history of an Application",
                description="Print the recorded sync operations of an Application, oldest first",
            ),
        )
        common.add_app_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml", "json"],
            default=None,
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        app: str,
        namespace: str | None,
        output: str | None,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        async with common.session(save=False, **kwargs) as current:
            application = current.find(app, namespace)
            history = current.store.get_history(application.resource_id)
        entries = [entry.to_dict() for entry in history]
        if output in STRUCT_FORMATTERS:
            STRUCT_FORMATTERS[output]().print(entries)
            return
        if not entries:
            print(f"No sync history for Application {application.namespaced_name}")
            return
        PrintFormatter(COLUMNS).print(entries)
