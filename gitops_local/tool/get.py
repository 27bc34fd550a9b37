"""Gitops-local get action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import Any, cast

from gitops_local.manifest import Application
from gitops_local.status import ApplicationStatus

from . import common
from .format import STRUCT_FORMATTERS, PrintFormatter

_LOGGER = logging.getLogger(__name__)


def status_summary(app: Application, status: ApplicationStatus) -> dict[str, Any]:
    """Return the one line summary of an Application status."""
    return {
        "name": app.name,
        "namespace": app.namespace,
        "sync_status": status.sync_status,
        "health": status.health_status,
        "phase": status.phase,
        "revision": status.revision,
    }


def status_document(app: Application, status: ApplicationStatus) -> dict[str, Any]:
    """Return the structured form of an Application and its status."""
    return {
        "name": app.name,
        "namespace": app.namespace,
        "source": app.source.to_dict(),
        "destination": app.destination.to_dict(),
        "status": status.to_dict(),
    }


def print_status(
    app: Application, status: ApplicationStatus, output: str | None = None
) -> None:
    """Print the status of an Application in the requested output format."""
    if output in STRUCT_FORMATTERS:
        STRUCT_FORMATTERS[output]().print(status_document(app, status))
        return
    PrintFormatter().print([status_summary(app, status)])
    if output == "wide" and status.resources:
        print()
        PrintFormatter().print(
            [
                {
                    "kind": r.resource_id.kind,
                    "namespace": r.resource_id.namespace,
                    "name": r.resource_id.name,
                    "status": r.sync_status,
                    "health": r.health,
                    "prune": "yes" if r.requires_pruning else "",
                }
                for r in status.resources
            ]
        )
    if status.operation is not None and status.operation.message:
        print()
        print(f"Last sync: {status.operation.phase}: {status.operation.message}")
    for condition in status.conditions:
        print(f"{condition.type}: {condition.message}")


class GetAction:
    """Get the recorded status of an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Get the status of an Application",
                description=(
                    "Print the status recorded by the last comparison or sync "
                    "of an Application"
                ),
            ),
        )
        common.add_app_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["wide", "yaml", "json"],
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
            status = current.store.get_status(application.resource_id)
        print_status(application, status or ApplicationStatus(), output)
