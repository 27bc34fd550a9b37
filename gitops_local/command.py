"""Library for running the external `kubectl` and `kustomize` binaries.

Each invocation is described by a `Command` and executed with `run`, which
feeds optional stdin, enforces a timeout and maps failures to the exception
type the caller asked for.
"""

import asyncio
from dataclasses import dataclass, field
import logging
import shlex
import subprocess
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

# Subprocesses running at once across every Application
MAX_PROCESSES = 20
DEFAULT_TIMEOUT = 60.0

_SEM = asyncio.Semaphore(MAX_PROCESSES)


# No public API
__all__: list[str] = []


@dataclass
class Command:
    """A command line for a binary along with how to interpret its result."""

    cmd: list[str]
    """Program followed by its arguments."""

    cwd: Path | None = None

    exc: type[CommandException] = CommandException
    """Exception raised when the command fails or times out."""

    retcodes: list[int] = field(default_factory=list)
    """Non-zero return codes that still count as success."""

    def __str__(self) -> str:
        return shlex.join(self.cmd)

    def check(self, returncode: int, out: bytes, err: bytes) -> None:
        """Raise the configured exception unless the return code is a success."""
        if not returncode or returncode in self.retcodes:
            return
        message = [f"Command '{self}' failed with return code {returncode}"]
        message.extend(
            part.decode("utf-8", errors="replace").strip() for part in (out, err) if part
        )
        _LOGGER.debug("\n".join(message))
        raise self.exc("\n".join(message))


async def _communicate(cmd: Command, stdin: bytes | None) -> bytes:
    proc = await asyncio.create_subprocess_exec(
        *cmd.cmd,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cmd.cwd,
    )
    try:
        out, err = await proc.communicate(stdin)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    cmd.check(proc.returncode or 0, out, err)
    return out


async def run(
    cmd: Command, stdin: bytes | None = None, timeout: float = DEFAULT_TIMEOUT
) -> str:
    """Run the command and return its decoded stdout.

    A command still running after `timeout` seconds is killed.
    """
    async with _SEM:
        _LOGGER.debug("Running command: %s", cmd)
        try:
            out = await asyncio.wait_for(_communicate(cmd, stdin), timeout)
        except TimeoutError as err:
            raise cmd.exc(f"Command '{cmd}' timed out after {timeout}s") from err
    return out.decode("utf-8", errors="replace")
