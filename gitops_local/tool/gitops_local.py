"""Command line tool for reconciling Applications against a cluster."""

import argparse
import asyncio
import logging
import pathlib
import sys
import traceback
from typing import Any

import yaml

from gitops_local.exceptions import GitOpsException

from . import common, diff, get, history, refresh, run, sync

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for reconciling Applications against a cluster.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    parser.add_argument(
        "--path",
        type=pathlib.Path,
        default=pathlib.Path("."),
        help="File or directory of Application descriptors",
    )
    parser.add_argument(
        "--state-file",
        type=pathlib.Path,
        default=common.DEFAULT_STATE_FILE,
        help="File recording the status and sync history of each Application",
    )
    parser.add_argument(
        "--kube-context",
        default=None,
        help="Name of the kubeconfig context to use",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to the kubeconfig file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    get.GetAction.register(subparsers)
    sync.SyncAction.register(subparsers)
    refresh.RefreshAction.register(subparsers)
    history.HistoryAction.register(subparsers)
    diff.DiffAction.register(subparsers)
    run.RunAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Gitops-local command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect.

        See https://github.com/yaml/pyyaml/issues/240
        """
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except GitOpsException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gitops-local error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
