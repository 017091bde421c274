"""Log tailing for supervised jobs.

Finds the current job log, tells whether its worker is alive, and streams
the log to the user. Following "until this PID exits" is done natively by
GNU tail where available and emulated elsewhere; the choice is made once
by select_follow_strategy().

PollingFollow emulates follow inside the calling process: it reads the
log itself and checks worker liveness between reads, rather than starting
an auxiliary observer process. Output after the worker exits is drained
before the stream ends.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterator
from pathlib import Path

import psutil

from .logging import get_logger
from .state import LaunchFailure

log = get_logger("tail")

# Supervisor logs are "<pid>.log"; internal commands write "<pid>-<command>.log"
LOG_NAME_RE = re.compile(r"^(\d+)\.log$")

# Machine-readable line prefix: "[TAG]" + optional numeric fragment + tab
PREFIX_RE = re.compile(r"^\[[^\]\t]*\][0-9.:,-]*\t")

ERROR_TAGS = frozenset({"ERROR", "FATAL", "SEVERE", "WARN", "WARNING"})
_TAG_RE = re.compile(r"^\[([A-Za-z]+)")


# === Liveness ===


def is_running(pid: int) -> bool:
    """True if a zero-signal probe succeeds or the process table has pid."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True  # Exists, owned by someone else
    except OSError:
        pass
    return psutil.pid_exists(pid)


# === Log discovery ===


def find_current_log(logs_dir: Path) -> Path | None:
    """Most recently modified supervisor log, ignoring internal-command logs."""
    if not logs_dir.is_dir():
        return None
    candidates = []
    for path in logs_dir.iterdir():
        if not LOG_NAME_RE.match(path.name):
            continue
        try:
            candidates.append((path.stat().st_mtime, path))
        except FileNotFoundError:
            continue
    if not candidates:
        return None
    return max(candidates)[1]


def wait_for_log(
    logs_dir: Path, timeout: float, interval: float = 0.2, path: Path | None = None
) -> Path:
    """Wait for a log to appear (a specific one if path is given).

    Raises:
        LaunchFailure: Nothing appeared within timeout.
    """
    deadline = time.monotonic() + timeout
    while True:
        if path is None:
            found = find_current_log(logs_dir)
        else:
            found = path if path.exists() else None
        if found is not None:
            return found
        if time.monotonic() >= deadline:
            raise LaunchFailure(f"No worker log appeared in {logs_dir} within {timeout:g}s")
        time.sleep(interval)


# === Line filtering ===


def strip_prefix(line: str) -> str:
    """Remove the machine-readable prefix and trailing newline from a log line."""
    return PREFIX_RE.sub("", line.rstrip("\r\n"), count=1)


def is_error_line(line: str) -> bool:
    m = _TAG_RE.match(line)
    return bool(m) and m.group(1).upper() in ERROR_TAGS


# === Window sizing ===


def terminal_rows(default: int = 24) -> int:
    return shutil.get_terminal_size((80, default)).lines


def display_rows(
    requested: int | None, running: bool, margin: int, rows: int | None = None
) -> int:
    """How many trailing lines to show.

    A running job streams from a window the size of the terminal; a
    finished one leaves `margin` rows for status text. An explicit
    request wins in both cases.
    """
    if requested is not None and requested > 0:
        return requested
    rows = terminal_rows() if rows is None else rows
    if running:
        return max(rows, 1)
    return max(rows - margin, 1)


def tail_lines(path: Path, count: int) -> list[str]:
    """Last `count` lines of a file."""
    with open(path, errors="replace") as f:
        return list(deque(f, maxlen=count))


# === Incremental reader ===


class LogCursor:
    """Reads lines appended to a log since the previous call."""

    def __init__(self, path: Path, offset: int = 0):
        self.path = path
        self.offset = offset
        self._partial = ""

    @classmethod
    def at_tail(cls, path: Path, count: int) -> tuple[LogCursor, list[str]]:
        """Cursor positioned at end of file, plus the last `count` lines."""
        lines = tail_lines(path, count) if path.exists() else []
        size = path.stat().st_size if path.exists() else 0
        return cls(path, offset=size), lines

    def read_new_lines(self) -> list[str]:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                chunk = f.read()
        except FileNotFoundError:
            return []
        if not chunk:
            return []
        self.offset += len(chunk)
        text = self._partial + chunk.decode(errors="replace")
        lines = text.split("\n")
        self._partial = lines.pop()
        return [line + "\n" for line in lines]

    def flush(self) -> list[str]:
        """Remaining unterminated line, if any."""
        rest, self._partial = self._partial, ""
        return [rest] if rest else []


# === Follow strategies ===


class FollowStrategy(ABC):
    """Stream a log until the worker with a given PID exits."""

    name = "abstract"

    @abstractmethod
    def follow(self, path: Path, pid: int, rows: int) -> Iterator[str]:
        """Yield the last `rows` lines, then new lines until pid exits."""


class NativeFollow(FollowStrategy):
    """GNU tail with --pid: tail itself stops when the worker exits."""

    name = "native"

    def __init__(self, tail_command: str = "tail"):
        self.tail_command = tail_command

    def follow(self, path: Path, pid: int, rows: int) -> Iterator[str]:
        cmd = [self.tail_command, "-n", str(rows), f"--pid={pid}", "-F", str(path)]
        log.debug("Following log", strategy=self.name, command=cmd)
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        try:
            assert proc.stdout is not None
            yield from proc.stdout
        finally:
            if proc.poll() is None:
                proc.terminate()
            proc.wait()


class PollingFollow(FollowStrategy):
    """Emulated follow: read new data and poll the worker's liveness."""

    name = "polling"

    def __init__(self, interval: float = 0.5, alive: Callable[[int], bool] = is_running):
        self.interval = interval
        self.alive = alive

    def follow(self, path: Path, pid: int, rows: int) -> Iterator[str]:
        cursor, initial = LogCursor.at_tail(path, rows)
        yield from initial
        while True:
            running = self.alive(pid)
            yield from cursor.read_new_lines()
            if not running:
                # Anything written before the exit was observed
                yield from cursor.read_new_lines()
                yield from cursor.flush()
                return
            time.sleep(self.interval)


def supports_native_follow(tail_command: str = "tail") -> bool:
    """GNU coreutils tail (Linux) understands --pid; BSD tail does not."""
    return sys.platform.startswith("linux") and shutil.which(tail_command) is not None


def select_follow_strategy(interval: float = 0.5) -> FollowStrategy:
    if supports_native_follow():
        return NativeFollow()
    return PollingFollow(interval=interval)


# === Streaming ===


def stream_log(
    path: Path,
    pid: int | None,
    rows: int,
    running: bool,
    strategy: FollowStrategy | None = None,
    errors_only: bool = False,
    out=None,
) -> int:
    """Print a job log: followed while the worker runs, else its tail.

    Returns:
        Number of lines printed.
    """
    out = out or sys.stdout
    if running and pid is not None:
        lines: Iterator[str] | list[str] = (strategy or select_follow_strategy()).follow(
            path, pid, rows
        )
    else:
        lines = tail_lines(path, rows)

    printed = 0
    try:
        for line in lines:
            if errors_only and not is_error_line(line):
                continue
            print(strip_prefix(line), file=out, flush=True)
            printed += 1
    except KeyboardInterrupt:
        pass  # Leaving the follow does not touch the job
    return printed
