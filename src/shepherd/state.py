"""Job state for the shepherd supervisor.

Defines the job lifecycle, the error taxonomy, and the marker files the
worker and the supervisor use to signal each other.
"""

import contextlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import SupervisorConfig

# === Errors ===


class SupervisorError(Exception):
    """Base class for supervisor failures."""


class LaunchFailure(SupervisorError):
    """The worker never announced its PID, or its log never appeared."""


class StopHookFailure(SupervisorError):
    """The worker's stop-outstanding-commands hook failed or timed out."""


class RegistryInconsistency(SupervisorError):
    """A registry entry points at a missing local entry or a reused PID."""


class InvalidTransition(ValueError):
    """A job was moved to a state its current state cannot reach."""


# === Job State ===


class JobState(str, Enum):
    """Lifecycle of a supervised job."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    KILLED = "killed"
    CRASHED = "crashed"


# States only move forward, except RUNNING <-> PAUSED.
TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.STARTING: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset(
        {JobState.PAUSED, JobState.STOPPING, JobState.COMPLETED, JobState.CRASHED}
    ),
    JobState.PAUSED: frozenset(
        {JobState.RUNNING, JobState.STOPPING, JobState.COMPLETED, JobState.CRASHED}
    ),
    JobState.STOPPING: frozenset({JobState.KILLED}),
    JobState.COMPLETED: frozenset(),
    JobState.KILLED: frozenset(),
    JobState.CRASHED: frozenset(),
}

TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.KILLED, JobState.CRASHED})


@dataclass
class Job:
    """A single supervised execution, identified by the worker's PID."""

    job_id: int
    launch_command: list[str]
    log_path: Path
    working_directory: Path
    state: JobState = JobState.STARTING
    history: list[JobState] = field(default_factory=list, repr=False)

    def advance(self, new_state: JobState) -> None:
        """Move to new_state, enforcing the transition table."""
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.RUNNING, JobState.PAUSED)

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES


# === Marker files ===

SUCCESS_WORDS = frozenset({"success", "ok", "0", "passed"})


def read_results(config: SupervisorConfig, job_id: int) -> bool | None:
    """Read the worker's results marker.

    Returns:
        True if it reports success, False if it reports failure,
        None if the worker never wrote one.
    """
    marker = config.results_dir / str(job_id)
    try:
        text = marker.read_text().strip()
    except FileNotFoundError:
        return None
    words = text.split()
    return bool(words) and words[0].lower() in SUCCESS_WORDS


def check_pause_requested(config: SupervisorConfig) -> bool:
    """Check if a pause was requested via the pause marker."""
    return config.pause_file.exists()


def request_pause(config: SupervisorConfig, job_id: int | None) -> None:
    """Create the pause marker the worker watches for."""
    config.pause_file.parent.mkdir(parents=True, exist_ok=True)
    config.pause_file.write_text(f"{job_id if job_id is not None else ''}\n")


def clear_pause_file(config: SupervisorConfig) -> bool:
    """Remove the pause marker. Returns True if one existed."""
    try:
        config.pause_file.unlink()
    except FileNotFoundError:
        return False
    return True


def clear_results(config: SupervisorConfig, job_id: int) -> None:
    """Forget a stale results marker left by an earlier job with the same PID."""
    with contextlib.suppress(FileNotFoundError):
        (config.results_dir / str(job_id)).unlink()
