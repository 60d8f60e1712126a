"""Metric values and helpers for line-based metric files."""

from __future__ import annotations

import os
from contextlib import suppress
from dataclasses import dataclass


@dataclass
class MetricData:
    """Accumulated value of an aggregated metric and how many samples it holds."""

    value: float = 0.0
    amount: int = 0


def _split_lines(data: bytes) -> list[bytes]:
    """Split raw file content into lines, dropping line terminators."""
    lines = data.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return [line[:-1] if line.endswith(b"\r") else line for line in lines]


def read_metrics_from_file(path: str | os.PathLike[str]) -> list[str]:
    """Read every line of ``path`` and remove the file afterwards.

    Raises ``OSError`` when the file cannot be opened; in that case the file
    is left alone.
    """
    handle = open(path, "rb")
    try:
        with handle:
            data = handle.read()
    finally:
        with suppress(OSError):
            os.remove(path)
    return [line.decode("utf-8", "surrogateescape") for line in _split_lines(data)]


def count_lines(path: str | os.PathLike[str]) -> int:
    """Return the number of lines in ``path``, or 0 if it cannot be read."""
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError:
        return 0
    return len(_split_lines(data))