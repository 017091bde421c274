"""
shepherd: supervise long-running background jobs from a project directory.

Usage as library:
    from shepherd import SupervisorConfig, JobSupervisor
    from shepherd import JobRegistry, stream_log

Usage as CLI:
    shepherd ARGS...         # Launch the worker with ARGS and follow it
    shepherd stop            # Stop the last job run here
    shepherd pause|resume    # Pause marker for the worker
    shepherd log -n 50       # Follow or tail the current log
    shepherd oldjobs         # Jobs running in any project
"""

import importlib
from importlib.metadata import PackageNotFoundError, version

# Public names resolve on first access, so `python -m shepherd.launcher`
# loads only what the launcher itself imports before publishing its PID.
_EXPORTS = {
    "SupervisorConfig": "config",
    "build_config": "config",
    "load_config_from_yaml": "config",
    "PidRendezvous": "handoff",
    "publish_pid": "handoff",
    "get_logger": "logging",
    "setup_logging": "logging",
    "GlobalJob": "registry",
    "JobRegistry": "registry",
    "InvalidTransition": "state",
    "Job": "state",
    "JobState": "state",
    "LaunchFailure": "state",
    "RegistryInconsistency": "state",
    "StopHookFailure": "state",
    "SupervisorError": "state",
    "JobSupervisor": "supervisor",
    "run_stop_hook": "supervisor",
    "terminate_job": "supervisor",
    "is_running": "tail",
    "stream_log": "tail",
}


def __getattr__(name: str):
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(f".{module}", __name__), name)
    globals()[name] = value
    return value


try:
    __version__ = version("shepherd")
except PackageNotFoundError:
    __version__ = "0.0.0.dev"  # Fallback for development without install

__all__ = [
    "GlobalJob",
    "InvalidTransition",
    "Job",
    "JobRegistry",
    "JobState",
    "JobSupervisor",
    "LaunchFailure",
    "PidRendezvous",
    "RegistryInconsistency",
    "StopHookFailure",
    "SupervisorConfig",
    "SupervisorError",
    "__version__",
    "build_config",
    "get_logger",
    "is_running",
    "load_config_from_yaml",
    "publish_pid",
    "run_stop_hook",
    "setup_logging",
    "stream_log",
    "terminate_job",
]
