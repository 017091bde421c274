"""PID handoff between a launch chain and the supervisor.

The supervisor usually starts an intermediate (a shell, a wrapper script)
rather than the worker itself, so the PID it gets back from the OS is not the
job's PID. The chain publishes the real PID through a one-shot rendezvous file
named after the supervisor's own PID: written to a temp name, then renamed
into place, so readers never see a partial value.
"""

import contextlib
import os
import time
from pathlib import Path

from .logging import get_logger
from .state import LaunchFailure

log = get_logger("handoff")

HANDOFF_PREFIX = "handoff-"


def handoff_path(state_dir: Path, supervisor_pid: int) -> Path:
    """Handoff file for one supervisor process."""
    return state_dir / f"{HANDOFF_PREFIX}{supervisor_pid}"


def publish_pid(path: Path, pid: int | None = None) -> None:
    """Atomically publish a PID at path.

    Called by the launch chain as its first action. Defaults to the
    calling process's own PID.
    """
    pid = os.getpid() if pid is None else pid
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{pid}.tmp")
    with open(tmp, "w") as f:
        f.write(f"{pid}\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class PidRendezvous:
    """One-shot, atomically published PID exchanged between two processes."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_supervisor(
        cls, state_dir: Path, supervisor_pid: int | None = None
    ) -> "PidRendezvous":
        pid = os.getpid() if supervisor_pid is None else supervisor_pid
        return cls(handoff_path(state_dir, pid))

    def publish(self, pid: int | None = None) -> None:
        publish_pid(self.path, pid)

    def wait(self, timeout: float, interval: float = 0.1) -> int:
        """Poll until the PID is published and return it.

        The file is left in place; call discard() once the PID has been
        recorded elsewhere.

        Raises:
            LaunchFailure: Nothing was published within timeout, or the
                published value is not a PID.
        """
        deadline = time.monotonic() + timeout
        while not self.path.exists():
            if time.monotonic() >= deadline:
                raise LaunchFailure(
                    f"Worker did not publish its PID to {self.path} within {timeout:g}s"
                )
            time.sleep(interval)

        raw = self.path.read_text().strip()
        try:
            pid = int(raw)
        except ValueError:
            raise LaunchFailure(f"Handoff file {self.path} holds no PID: {raw!r}") from None
        if pid <= 0:
            raise LaunchFailure(f"Handoff file {self.path} holds an invalid PID: {pid}")
        log.debug("PID received", handoff=str(self.path), pid=pid)
        return pid

    def discard(self) -> None:
        """Delete the handoff file (and any temp file left by a dead writer)."""
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        for tmp in self.path.parent.glob(f".{self.path.name}.*.tmp"):
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
