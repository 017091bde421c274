"""Job registry: which jobs exist, here and across all projects.

Two scopes:

- local: `<project>/.shepherd/active-jobs/<job_id>` holds the launch command.
  Written once at launch, removed only by explicit cleanup.
- global: `~/.shepherd/active-jobs/<job_id>` is a symlink (or pointer file)
  to the local entry, so jobs can be listed from any directory. It is renamed
  into `completed-jobs/` once the job is seen to have exited.

Entries are only ever created or renamed, never edited in place. Nothing is
cached: every query re-reads the directories.
"""

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from .config import SupervisorConfig
from .logging import get_logger
from .state import Job, RegistryInconsistency, check_pause_requested
from .tail import is_running

log = get_logger("registry")


@dataclass
class GlobalJob:
    """A live job found in the user-global registry."""

    job_id: int
    working_directory: Path
    launch_command: str


def _job_ids(directory: Path) -> list[int]:
    if not directory.is_dir():
        return []
    return sorted(int(p.name) for p in directory.iterdir() if p.name.isdigit())


class JobRegistry:
    """Local and global job entries for one project."""

    def __init__(self, config: SupervisorConfig, alive=is_running):
        self.config = config
        self._alive = alive

    # --- paths ---

    def local_entry(self, job_id: int) -> Path:
        return self.config.active_jobs_dir / str(job_id)

    def global_entry(self, job_id: int) -> Path:
        return self.config.global_active_dir / str(job_id)

    def completed_entry(self, job_id: int) -> Path:
        return self.config.global_completed_dir / str(job_id)

    # --- registration ---

    def register_local(self, job: Job) -> Path:
        """Append the launch command to the job's local entry."""
        entry = self.local_entry(job.job_id)
        entry.parent.mkdir(parents=True, exist_ok=True)
        with open(entry, "a") as f:
            f.write(shlex.join(job.launch_command) + "\n")
            f.flush()
            os.fsync(f.fileno())
        log.debug("Registered local job", job_id=job.job_id, entry=str(entry))
        return entry

    def register_global(self, job: Job) -> Path:
        """Point the global entry at the local one, replacing a stale entry."""
        target = self.local_entry(job.job_id).resolve()
        entry = self.global_entry(job.job_id)
        entry.parent.mkdir(parents=True, exist_ok=True)
        tmp = entry.with_name(f".{entry.name}.{os.getpid()}.tmp")
        if os.path.lexists(tmp):
            tmp.unlink()
        try:
            os.symlink(target, tmp)
        except (OSError, NotImplementedError):
            # No symlinks here: fall back to a pointer file
            tmp.write_text(f"{target}\n")
        if os.path.lexists(entry):
            log.warning("Replacing stale global entry", job_id=job.job_id)
        os.replace(tmp, entry)
        log.debug("Registered global job", job_id=job.job_id, entry=str(entry))
        return entry

    # --- queries ---

    def active_local_jobs(self) -> list[int]:
        return _job_ids(self.config.active_jobs_dir)

    def most_recent_job(self) -> int | None:
        """Most recently launched job here, or None if nothing was ever run."""
        newest: tuple[float, int] | None = None
        for job_id in self.active_local_jobs():
            try:
                mtime = self.local_entry(job_id).stat().st_mtime
            except FileNotFoundError:
                continue
            if newest is None or (mtime, job_id) > newest:
                newest = (mtime, job_id)
        return newest[1] if newest else None

    def launch_command(self, job_id: int) -> str | None:
        try:
            return self.local_entry(job_id).read_text().strip()
        except FileNotFoundError:
            return None

    def describe(self, job_id: int | None) -> str:
        """Display state of a job launched here."""
        if job_id is None:
            return "never run"
        if not self._alive(job_id):
            return "finished"
        return "paused" if check_pause_requested(self.config) else "running"

    def resolve_global(self, job_id: int) -> Path:
        """Local entry a global entry points at."""
        entry = self.global_entry(job_id)
        if entry.is_symlink():
            return Path(os.readlink(entry))
        return Path(entry.read_text().strip())

    def list_global(self) -> list[GlobalJob]:
        """Live jobs from all projects.

        Not read-only: entries whose process is gone, or whose local entry
        no longer exists, are archived on the way.
        """
        jobs: list[GlobalJob] = []
        for job_id in _job_ids(self.config.global_active_dir):
            try:
                job = self._check_global(job_id)
            except OSError as e:
                log.warning("Skipping unreadable global entry", job_id=job_id, error=str(e))
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    def _check_global(self, job_id: int) -> GlobalJob | None:
        if not self._alive(job_id):
            log.debug("Job no longer running", job_id=job_id)
            self.archive(job_id)
            return None

        target = self.resolve_global(job_id)
        try:
            command = target.read_text().strip()
        except FileNotFoundError:
            # Live PID but no local entry: the PID was reused by something else
            err = RegistryInconsistency(f"job {job_id}: local entry {target} is missing")
            log.warning("Reconciling registry", job_id=job_id, error=str(err))
            self.archive(job_id)
            return None

        # <project>/<state dir>/active-jobs/<job_id>
        return GlobalJob(
            job_id=job_id,
            working_directory=target.parent.parent.parent,
            launch_command=command,
        )

    # --- lifecycle ---

    def archive(self, job_id: int) -> bool:
        """Move the global entry to completed-jobs. Idempotent.

        Returns:
            True if an entry was moved, False if there was nothing to move.
        """
        entry = self.global_entry(job_id)
        if not os.path.lexists(entry):
            return False
        self.config.global_completed_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(entry, self.completed_entry(job_id))
        except FileNotFoundError:
            return False  # Archived concurrently
        log.info("Archived job", job_id=job_id)
        return True

    def remove_active(self, job_id: int) -> None:
        """Drop a job's active entries in both scopes."""
        for entry in (self.local_entry(job_id), self.global_entry(job_id)):
            try:
                entry.unlink()
            except FileNotFoundError:
                continue
            log.debug("Removed active entry", job_id=job_id, entry=str(entry))
