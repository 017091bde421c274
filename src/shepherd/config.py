"""Configuration module for shepherd.

Contains the SupervisorConfig dataclass, the on-disk layout derived from it,
config loading from YAML, and config building from CLI arguments.
"""

import argparse
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# === Constants ===

# Configuration file path (relative to the project root)
CONFIG_FILE = Path("shepherd.yaml")

# Environment handed to the launch chain
ENV_HANDOFF_FILE = "SHEPHERD_HANDOFF_FILE"
ENV_STATE_DIR = "SHEPHERD_STATE_DIR"
ENV_SUPERVISOR_PID = "SHEPHERD_SUPERVISOR_PID"
ENV_LOG_FILE = "SHEPHERD_LOG_FILE"


def _split_command(value: str | list | None) -> list[str] | None:
    """Accept a command either as a shell string or as a YAML list."""
    if value is None:
        return None
    if isinstance(value, str):
        return shlex.split(value)
    return [str(part) for part in value]


# === SupervisorConfig ===


@dataclass
class SupervisorConfig:
    """Supervisor configuration"""

    # Paths
    project_root: Path = Path(".")
    state_dir_name: str = ".shepherd"  # Always a direct child of project_root
    home_dir: Path = Path("~/.shepherd")  # User-global registry

    # Worker
    worker_command: list[str] = field(default_factory=list)
    use_launcher: bool = True  # Wrap worker with `python -m shepherd.launcher`
    stop_command: list[str] = field(default_factory=list)  # Empty = worker_command + stop_args
    stop_args: list[str] = field(default_factory=lambda: ["--stop-outstanding"])
    # Error-only view. "{log}" is replaced with the log path.
    errors_command: list[str] = field(default_factory=list)

    # Timeouts
    handoff_timeout_seconds: float = 30.0
    log_wait_seconds: float = 5.0
    stop_hook_timeout_seconds: float = 30.0
    kill_grace_seconds: float = 10.0  # SIGTERM -> SIGKILL escalation
    poll_interval_seconds: float = 0.1

    # Display
    tail_margin_rows: int = 3  # Rows kept free for status text in finished-job tails

    log_level: str = "info"

    def __post_init__(self):
        """Resolve project_root and expand the user-global directory."""
        self.project_root = Path(self.project_root).resolve()
        self.home_dir = Path(self.home_dir).expanduser()
        if len(Path(self.state_dir_name).parts) != 1:
            raise ValueError(
                f"state_dir_name must be a single path component: {self.state_dir_name}"
            )

    # --- project-local layout ---

    @property
    def state_dir(self) -> Path:
        return self.project_root / self.state_dir_name

    @property
    def active_jobs_dir(self) -> Path:
        return self.state_dir / "active-jobs"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def unclean_dir(self) -> Path:
        return self.state_dir / "unclean"

    @property
    def trash_dir(self) -> Path:
        return self.state_dir / "trash"

    @property
    def results_dir(self) -> Path:
        return self.state_dir / "results"

    @property
    def no_work_dir(self) -> Path:
        return self.state_dir / "no-work"

    @property
    def pause_file(self) -> Path:
        return self.state_dir / "pause"

    @property
    def history_file(self) -> Path:
        return self.state_dir / "history"

    def log_file(self, supervisor_pid: int, command: str = "") -> Path:
        """Log path for a supervisor process; internal commands get a suffix."""
        suffix = f"-{command}" if command else ""
        return self.logs_dir / f"{supervisor_pid}{suffix}.log"

    # --- user-global layout ---

    @property
    def global_active_dir(self) -> Path:
        return self.home_dir / "active-jobs"

    @property
    def global_completed_dir(self) -> Path:
        return self.home_dir / "completed-jobs"

    # --- commands ---

    def launch_command(self, args: list[str] | None = None) -> list[str]:
        """Full command line used to start the worker chain."""
        if not self.worker_command:
            raise ValueError("No worker command configured (set supervisor.worker.command)")
        command = [*self.worker_command, *(args or [])]
        if self.use_launcher:
            return [sys.executable, "-m", "shepherd.launcher", "--", *command]
        return command

    def stop_hook_command(self, args: list[str] | None = None) -> list[str]:
        """Invocation of the worker's "stop outstanding commands" mode."""
        base = self.stop_command or [*self.worker_command, *self.stop_args]
        return [*base, *(args or [])]


# === Config Loading ===


def load_config_from_yaml(config_path: Path = CONFIG_FILE) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Dictionary with configuration values (None for unset keys).
    """
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        supervisor = data.get("supervisor", {}) or {}
        worker = supervisor.get("worker", {}) or {}
        timeouts = supervisor.get("timeouts", {}) or {}
        paths = supervisor.get("paths", {}) or {}

        return {
            "worker_command": _split_command(worker.get("command")),
            "use_launcher": worker.get("launcher"),
            "stop_command": _split_command(worker.get("stop_command")),
            "stop_args": _split_command(worker.get("stop_args")),
            "errors_command": _split_command(worker.get("errors_command")),
            "handoff_timeout_seconds": timeouts.get("handoff"),
            "log_wait_seconds": timeouts.get("log_wait"),
            "stop_hook_timeout_seconds": timeouts.get("stop_hook"),
            "kill_grace_seconds": timeouts.get("kill_grace"),
            "poll_interval_seconds": supervisor.get("poll_interval"),
            "tail_margin_rows": supervisor.get("tail_margin"),
            "state_dir_name": paths.get("state"),
            "home_dir": Path(paths["home"]) if paths.get("home") else None,
            "log_level": supervisor.get("log_level"),
        }
    except Exception as e:
        from .logging import get_logger

        get_logger("config").warning(
            "Failed to load config", config_file=str(config_path), error=str(e)
        )
        return {}


def build_config(yaml_config: dict, args: argparse.Namespace) -> SupervisorConfig:
    """Build SupervisorConfig from YAML and CLI arguments.

    CLI arguments override YAML config.

    Args:
        yaml_config: Configuration loaded from YAML file.
        args: Parsed CLI arguments.

    Returns:
        SupervisorConfig instance.
    """
    config_kwargs = {}

    for key, value in yaml_config.items():
        if value is not None:
            config_kwargs[key] = value

    if getattr(args, "project_root", None):
        config_kwargs["project_root"] = Path(args.project_root)
    if getattr(args, "log_level", None):
        config_kwargs["log_level"] = args.log_level
    if getattr(args, "worker", None):
        config_kwargs["worker_command"] = shlex.split(args.worker)
    if getattr(args, "no_launcher", False):
        config_kwargs["use_launcher"] = False
    if getattr(args, "handoff_timeout", None) is not None:
        config_kwargs["handoff_timeout_seconds"] = args.handoff_timeout

    return SupervisorConfig(**config_kwargs)
