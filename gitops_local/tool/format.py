"""Library for formatting command output."""

from abc import ABC, abstractmethod
from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 3


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string from the widest value of each column."""
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "".join(f"{{:{w + PADDING}}}" for w in widths[:-1]) + "{}"


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the rows aligned in columns below the headers."""
    data = [headers] + rows
    format_string = column_format_string(data)
    for row in data:
        yield format_string.format(*row).rstrip()


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class PrintFormatter:
    """A formatter that prints a human readable table."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the rows, one output line per row plus a header."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[_cell(row.get(key)) for key in keys] for row in data]
        headers = [key.upper().replace("_", " ") for key in keys]
        yield from format_columns(headers, rows)

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the rows."""
        for line in self.format(data):
            print(line, file=file)


class StructFormatter(ABC):
    """A formatter that prints structured objects."""

    @abstractmethod
    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""

    def print(self, data: Any, file: TextIO = sys.stdout) -> None:
        """Print the data object."""
        for line in self.format(data):
            print(line, file=file)


class YamlFormatter(StructFormatter):
    """A formatter that prints a yaml document."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""
        content = yaml.dump(data, sort_keys=False, explicit_start=True)
        yield from content.rstrip("\n").split("\n")


class JsonFormatter(StructFormatter):
    """A formatter that prints json output."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data object."""
        yield from json.dumps(data, indent=4, sort_keys=False, default=str).split("\n")


STRUCT_FORMATTERS: dict[str, type[StructFormatter]] = {
    "yaml": YamlFormatter,
    "json": JsonFormatter,
}
