"""CLI commands and argument parsing for shepherd."""

import argparse
import os
import subprocess
import sys
from pathlib import Path
from uuid import uuid4

from .cleanup import quarantine_unclean
from .config import (
    CONFIG_FILE,
    SupervisorConfig,
    build_config,
    load_config_from_yaml,
)
from .logging import get_logger
from .registry import JobRegistry
from .state import (
    LaunchFailure,
    clear_pause_file,
    request_pause,
)
from .supervisor import JobSupervisor, prompt_tty, run_stop_hook, terminate_job
from .tail import display_rows, find_current_log, is_running, stream_log, wait_for_log

logger = get_logger("cli")


def _worker_args(args: argparse.Namespace) -> list[str]:
    rest = list(getattr(args, "args", None) or [])
    if rest and rest[0] == "--":
        rest = rest[1:]
    return rest


# === CLI Commands ===


def cmd_run(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Launch a worker and supervise it until it exits."""
    registry = JobRegistry(config)
    last = registry.most_recent_job()
    if last is not None and is_running(last):
        state = registry.describe(last)
        logger.warning("Another job is already active here", job_id=last, state=state)
        question = f"Job {last} is {state} in this directory. Start another one? [y/N] "
        if not getattr(args, "yes", False) and not prompt_tty(question):
            return 1

    supervisor = JobSupervisor(config, registry=registry, echo=not getattr(args, "quiet", False))
    try:
        return supervisor.run(_worker_args(args))
    except LaunchFailure as e:
        logger.error("Launch failed", error=str(e), log_file=str(supervisor.log_path))
        return 2
    except ValueError as e:
        logger.error("Cannot launch", error=str(e))
        return 2


def cmd_stop(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Stop outstanding commands, then terminate the last job run here."""
    registry = JobRegistry(config)
    job_id = registry.most_recent_job()
    run_stop_hook(config, _worker_args(args))

    if job_id is None or not is_running(job_id):
        print("No running job found")
        return 1

    print(f"Stopping job {job_id}")
    if not terminate_job(job_id, config.kill_grace_seconds):
        logger.error("Job did not exit", job_id=job_id)
        return 1
    registry.archive(job_id)
    return 0


def cmd_pause(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Ask the worker to pause at its next checkpoint."""
    job_id = JobRegistry(config).most_recent_job()
    if job_id is None:
        print("No job has been run here")
        return 1
    request_pause(config, job_id)
    print(f"Pause requested for job {job_id}")
    return 0


def cmd_resume(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Remove the pause marker."""
    job_id = JobRegistry(config).most_recent_job()
    if job_id is None:
        print("No job has been run here")
        return 1
    if clear_pause_file(config):
        print(f"Resume requested for job {job_id}")
    else:
        print(f"Job {job_id} is not paused")
    return 0


def cmd_status(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Show the last job run here."""
    registry = JobRegistry(config)
    job_id = registry.most_recent_job()
    if job_id is None:
        print("No job has been run here")
        return 1

    print(f"Job:      {job_id}")
    print(f"State:    {registry.describe(job_id)}")
    print(f"Command:  {registry.launch_command(job_id) or '?'}")
    log_file = find_current_log(config.logs_dir)
    if log_file is not None:
        print(f"Log:      {log_file}")
    return 0


def cmd_log(args: argparse.Namespace, config: SupervisorConfig, errors: bool = False) -> int:
    """Follow the current log while the job runs, else show its tail."""
    job_id = JobRegistry(config).most_recent_job()
    if job_id is None:
        print("No job has been run here")
        return 1
    try:
        log_file = wait_for_log(config.logs_dir, config.log_wait_seconds)
    except LaunchFailure as e:
        logger.error("No log to show", error=str(e))
        return 1

    if errors and config.errors_command:
        cmd = [part.replace("{log}", str(log_file)) for part in config.errors_command]
        return subprocess.run([*cmd, *_worker_args(args)], cwd=config.project_root).returncode

    running = is_running(job_id)
    rows = display_rows(getattr(args, "rows", None), running, config.tail_margin_rows)
    stream_log(log_file, job_id, rows, running, errors_only=errors)
    if not running:
        print(f"-- job {job_id} is not running ({log_file}) --")
    return 0


def cmd_errors(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Error-only view of the current log."""
    return cmd_log(args, config, errors=True)


def cmd_oldjobs(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """List running jobs from every project (archives dead ones on the way)."""
    jobs = JobRegistry(config).list_global()
    if not jobs:
        print("No active jobs")
        return 0
    print(f"{'JOB':>8}  {'DIRECTORY':<40}  COMMAND")
    for job in jobs:
        print(f"{job.job_id:>8}  {str(job.working_directory):<40}  {job.launch_command}")
    return 0


def cmd_history(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Print the command history written by the worker."""
    history = config.history_file
    if not history.exists():
        print("No history")
        return 0
    sys.stdout.write(history.read_text())
    return 0


def cmd_clean(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Drop entries of dead jobs and quarantine unclean output."""
    registry = JobRegistry(config)
    removed = []
    for job_id in registry.active_local_jobs():
        if is_running(job_id):
            continue
        registry.archive(job_id)
        registry.remove_active(job_id)
        removed.append(job_id)
    moved = quarantine_unclean(config)
    logger.info("Cleaned", removed_jobs=removed, quarantined=len(moved))
    print(f"Removed {len(removed)} finished job(s), quarantined {len(moved)} file(s)")
    return 0


def cmd_tui(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Launch the read-only dashboard."""
    from .logging import setup_logging
    from .tui import ShepherdApp

    config.logs_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(
        level=config.log_level, tui_mode=True, log_file=config.log_file(os.getpid(), "tui")
    )
    ShepherdApp(config=config).run()
    return 0


def cmd_mcp(args: argparse.Namespace, config: SupervisorConfig) -> int:
    """Launch the read-only MCP server (stdio)."""
    from .mcp_server import run_server

    run_server()
    return 0


COMMANDS = {
    "run": cmd_run,
    "stop": cmd_stop,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "status": cmd_status,
    "log": cmd_log,
    "errors": cmd_errors,
    "oldjobs": cmd_oldjobs,
    "history": cmd_history,
    "clean": cmd_clean,
    "tui": cmd_tui,
    "mcp": cmd_mcp,
}

# Shared options that take a value
_VALUE_OPTIONS = {"--project-root", "--config", "--log-level", "--worker", "--handoff-timeout"}


def with_default_command(argv: list[str]) -> list[str]:
    """Insert "run" when no command is given: `shepherd ARGS` == `shepherd run ARGS`."""
    i = 0
    while i < len(argv):
        token = argv[i]
        if token in COMMANDS or token in ("-h", "--help"):
            return argv
        if token in _VALUE_OPTIONS:
            i += 2
        elif token.startswith("--") and (token.split("=", 1)[0] in _VALUE_OPTIONS):
            i += 1
        elif token in ("--log-json", "--no-launcher"):
            i += 1
        else:
            break
    return [*argv[:i], "run", *argv[i:]]


# === Main ===


def build_parser() -> argparse.ArgumentParser:
    # Shared options available to every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project-root",
        type=str,
        default=argparse.SUPPRESS,
        help="Project directory (default: current directory)",
    )
    common.add_argument(
        "--config",
        type=str,
        default=argparse.SUPPRESS,
        help=f"Config file (default: <project>/{CONFIG_FILE})",
    )
    common.add_argument(
        "--log-level",
        type=str,
        default=argparse.SUPPRESS,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    common.add_argument(
        "--log-json", action="store_true", default=argparse.SUPPRESS, help="Output logs as JSON"
    )
    common.add_argument(
        "--worker", type=str, default=argparse.SUPPRESS, help="Worker command (overrides config)"
    )
    common.add_argument(
        "--no-launcher",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Worker publishes its own PID (no launch wrapper)",
    )
    common.add_argument(
        "--handoff-timeout",
        type=float,
        default=argparse.SUPPRESS,
        help="Seconds to wait for the worker to announce its PID",
    )

    parser = argparse.ArgumentParser(
        prog="shepherd",
        description="shepherd: supervise long-running background jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    run_parser = subparsers.add_parser("run", parents=[common], help="Launch a job (default)")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Don't ask about active jobs")
    run_parser.add_argument("--quiet", "-q", action="store_true", help="Don't echo the job log")
    run_parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the worker")

    # stop
    stop_parser = subparsers.add_parser("stop", parents=[common], help="Stop the last job")
    stop_parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the stop hook")

    # pause / resume / status
    subparsers.add_parser("pause", parents=[common], help="Pause the last job")
    subparsers.add_parser("resume", parents=[common], help="Resume a paused job")
    subparsers.add_parser("status", parents=[common], help="Show the last job")

    # log / errors
    for name, help_text in (("log", "Show the job log"), ("errors", "Show job errors")):
        log_parser = subparsers.add_parser(name, parents=[common], help=help_text)
        log_parser.add_argument("--rows", "-n", type=int, default=None, help="Lines to show")
        log_parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the viewer")

    subparsers.add_parser("oldjobs", parents=[common], help="List jobs running anywhere")
    subparsers.add_parser("history", parents=[common], help="Show command history")
    subparsers.add_parser("clean", parents=[common], help="Clean up finished jobs")
    subparsers.add_parser("tui", parents=[common], help="Launch read-only TUI dashboard")
    subparsers.add_parser("mcp", parents=[common], help="Launch read-only MCP server")
    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse a command line; options meant for the worker pass through."""
    parser = build_parser()
    args, extra = parser.parse_known_args(with_default_command(argv))
    if extra:
        # argparse leaves a leading "--flag" out of a REMAINDER positional
        if not hasattr(args, "args"):
            parser.error(f"unrecognized arguments: {' '.join(extra)}")
        args.args = [*extra, *args.args]
    return args


def main(argv: list[str] | None = None) -> None:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    # Load config from YAML file, then override with CLI args
    project_root = Path(getattr(args, "project_root", None) or ".")
    config_path = Path(getattr(args, "config", None) or project_root / CONFIG_FILE)
    yaml_config = load_config_from_yaml(config_path)
    config = build_config(yaml_config, args)

    from .logging import setup_logging

    setup_logging(level=config.log_level, json_output=getattr(args, "log_json", False))

    import structlog

    structlog.contextvars.bind_contextvars(session=uuid4().hex[:8])

    sys.exit(COMMANDS[args.command](args, config) or 0)


if __name__ == "__main__":
    main()
