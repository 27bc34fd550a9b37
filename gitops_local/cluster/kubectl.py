"""Cluster implementation that shells out to `kubectl`."""

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

import yaml

from gitops_local import command
from gitops_local.exceptions import ApplyError, CommandException
from gitops_local.manifest import IN_CLUSTER_SERVER, NamedResource

from .cluster import Cluster

__all__ = ["KubectlCluster", "KubectlConfig"]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"

TRANSIENT_ERRORS = re.compile(
    r"timed out|timeout|connection refused|connection reset|TLS handshake"
    r"|ServiceUnavailable|TooManyRequests|InternalError|etcdserver"
    r"|the server is currently unable|unexpected EOF",
    re.IGNORECASE,
)


class KubectlException(CommandException):
    """Raised when there is a failure running a kubectl command."""


@dataclass
class KubectlConfig:
    """Connection settings passed to every kubectl invocation."""

    context: str | None = None
    """Name of the kubeconfig context to use."""

    kubeconfig: str | None = None
    """Path to the kubeconfig file."""

    server: str | None = None
    """API server address, unset to use the one from the context."""

    timeout: float = 60.0
    """Seconds allowed for a single kubectl call."""


def is_transient(message: str) -> bool:
    """Return true if a kubectl failure message describes a retriable error."""
    return bool(TRANSIENT_ERRORS.search(message))


class KubectlCluster(Cluster):
    """A cluster reached through the `kubectl` binary."""

    def __init__(self, config: KubectlConfig | None = None) -> None:
        self._config = config or KubectlConfig()

    @classmethod
    def for_server(cls, config: KubectlConfig, server: str) -> "KubectlCluster":
        """Return a cluster for an Application destination server."""
        if server == IN_CLUSTER_SERVER:
            return cls(config)
        return cls(
            KubectlConfig(
                context=config.context,
                kubeconfig=config.kubeconfig,
                server=server,
                timeout=config.timeout,
            )
        )

    def _args(self, *args: str) -> list[str]:
        cmd = [KUBECTL_BIN]
        if self._config.context:
            cmd.extend(["--context", self._config.context])
        if self._config.kubeconfig:
            cmd.extend(["--kubeconfig", self._config.kubeconfig])
        if self._config.server:
            cmd.extend(["--server", self._config.server])
        cmd.extend(args)
        return cmd

    async def _run(
        self, resource: str, args: list[str], stdin: bytes | None = None
    ) -> str:
        cmd = command.Command(self._args(*args), exc=KubectlException)
        try:
            return await command.run(cmd, stdin=stdin, timeout=self._config.timeout)
        except FileNotFoundError as err:
            raise ApplyError(
                resource, f"Unable to run {KUBECTL_BIN}: {err}", transient=False
            ) from err
        except CommandException as err:
            message = str(err)
            raise ApplyError(resource, message, transient=is_transient(message)) from err

    @staticmethod
    def _parse(resource: str, out: str) -> dict[str, Any]:
        """Decode the json output of a command as an object."""
        try:
            result = json.loads(out)
        except json.JSONDecodeError as err:
            raise ApplyError(
                resource, f"Unable to parse {KUBECTL_BIN} output: {err}", transient=False
            ) from err
        if not isinstance(result, dict):
            raise ApplyError(
                resource, f"Unexpected {KUBECTL_BIN} output: {out[:200]}", transient=False
            )
        return result

    @staticmethod
    def _namespace_args(resource_id: NamedResource) -> list[str]:
        return ["-n", resource_id.namespace] if resource_id.namespace else []

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None when it does not exist."""
        out = await self._run(
            str(resource_id),
            [
                "get",
                resource_id.kind,
                resource_id.name,
                *self._namespace_args(resource_id),
                "--ignore-not-found",
                "-o",
                "json",
            ],
        )
        if not out.strip():
            return None
        return self._parse(str(resource_id), out)

    async def list_managed(
        self, label: str, value: str, kinds: set[str]
    ) -> list[dict[str, Any]]:
        """Return live objects of the given kinds carrying the label value."""
        if not kinds:
            return []
        out = await self._run(
            f"{label}={value}",
            [
                "get",
                ",".join(sorted(kinds)),
                "--all-namespaces",
                "-l",
                f"{label}={value}",
                "-o",
                "json",
            ],
        )
        if not out.strip():
            return []
        items = self._parse(f"{label}={value}", out).get("items") or []
        return [item for item in items if isinstance(item, dict)]

    async def apply(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Apply a single document with `kubectl apply`."""
        resource_id = NamedResource.from_doc(doc)
        _LOGGER.debug("Applying %s", resource_id)
        out = await self._run(
            str(resource_id),
            ["apply", "-f", "-", "-o", "json"],
            stdin=yaml.dump(doc, sort_keys=False).encode("utf-8"),
        )
        return self._parse(str(resource_id), out) if out.strip() else doc

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete an object, without waiting for finalizers."""
        _LOGGER.debug("Deleting %s", resource_id)
        await self._run(
            str(resource_id),
            [
                "delete",
                resource_id.kind,
                resource_id.name,
                *self._namespace_args(resource_id),
                "--ignore-not-found",
                "--wait=false",
            ],
        )
