"""Read-only MCP server for shepherd -- exposes job status, jobs and logs as tools."""

import argparse
import json
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import CONFIG_FILE, SupervisorConfig, build_config, load_config_from_yaml
from .registry import JobRegistry
from .tail import find_current_log, strip_prefix, tail_lines

mcp_app = FastMCP("shepherd")


def _build_config(project_root: str = "") -> SupervisorConfig:
    """Build SupervisorConfig from the project's YAML file."""
    root = Path(project_root or ".")
    args = argparse.Namespace(project_root=project_root)
    return build_config(load_config_from_yaml(root / CONFIG_FILE), args)


def _handle_status(config: SupervisorConfig) -> str:
    """Last job launched in the project."""
    registry = JobRegistry(config)
    job_id = registry.most_recent_job()
    if job_id is None:
        return json.dumps({"job_id": None, "state": "never run"})
    log_file = find_current_log(config.logs_dir)
    return json.dumps(
        {
            "job_id": job_id,
            "state": registry.describe(job_id),
            "command": registry.launch_command(job_id),
            "log_file": str(log_file) if log_file else None,
            "project_root": str(config.project_root),
        }
    )


def _handle_jobs(config: SupervisorConfig) -> str:
    """Jobs running in any project."""
    return json.dumps(
        [
            {
                "job_id": job.job_id,
                "working_directory": str(job.working_directory),
                "command": job.launch_command,
            }
            for job in JobRegistry(config).list_global()
        ]
    )


def _handle_log(config: SupervisorConfig, lines: int = 50) -> str:
    """Last N lines of the project's current log."""
    log_file = find_current_log(config.logs_dir)
    if log_file is None:
        return f"No logs in {config.logs_dir}"
    return "\n".join(strip_prefix(line) for line in tail_lines(log_file, lines))


# === MCP Tool Definitions ===


@mcp_app.tool()
def shepherd_status(project_root: str = "") -> str:
    """Get the last job launched in a project: id, state, command, log file."""
    return _handle_status(_build_config(project_root))


@mcp_app.tool()
def shepherd_jobs() -> str:
    """List jobs running in any project, with working directory and command."""
    return _handle_jobs(_build_config())


@mcp_app.tool()
def shepherd_log(lines: int = 50, project_root: str = "") -> str:
    """Get the last N lines of a project's current job log."""
    return _handle_log(_build_config(project_root), lines=lines)


def run_server() -> None:
    """Run the MCP server (stdio transport)."""
    mcp_app.run(transport="stdio")
