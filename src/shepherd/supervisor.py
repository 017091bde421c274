"""Process supervisor: launches a worker and owns its lifecycle.

    STARTING -> RUNNING <-> PAUSED
    RUNNING/PAUSED -> STOPPING -> KILLED
    RUNNING/PAUSED -> COMPLETED | CRASHED

The worker chain runs in its own session so a Ctrl-C in the terminal only
reaches the supervisor. SIGINT becomes a stop request that must be confirmed
on the terminal; SIGTERM is a stop request as is. Both are handled from the
wait loop, never inside the signal handler.
"""

import os
import signal
import subprocess
import sys
from collections.abc import Callable
from typing import TextIO

import psutil

from .cleanup import cleanup_launch_failure, quarantine_unclean
from .config import (
    ENV_HANDOFF_FILE,
    ENV_LOG_FILE,
    ENV_STATE_DIR,
    ENV_SUPERVISOR_PID,
    SupervisorConfig,
)
from .handoff import PidRendezvous
from .logging import get_logger
from .registry import JobRegistry
from .state import (
    Job,
    JobState,
    LaunchFailure,
    StopHookFailure,
    check_pause_requested,
    clear_pause_file,
    clear_results,
    read_results,
)
from .tail import LogCursor, is_running, strip_prefix

log = get_logger("supervisor")


# === Terminal confirmation ===


def prompt_tty(question: str) -> bool:
    """Ask the controlling terminal a yes/no question. Only "y" confirms."""
    try:
        with open("/dev/tty", "r+") as tty:
            tty.write(question)
            tty.flush()
            answer = tty.readline()
    except OSError:
        try:
            answer = input(question)
        except EOFError:
            return False
    return answer.strip().lower() in ("y", "yes")


# === Signals and waiting ===


def signal_job(pid: int, sig: int) -> bool:
    """Signal a job, and its whole process group when it leads one.

    Returns:
        False if the process no longer exists.
    """
    try:
        pgid = os.getpgid(pid)
        if pgid == pid and pgid != os.getpgrp():
            os.killpg(pgid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return False
    return True


def wait_pid(pid: int, timeout: float | None) -> bool:
    """Wait for any process (not just a child) to exit. True once it has."""
    try:
        psutil.Process(pid).wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except psutil.TimeoutExpired:
        return False
    return True


def terminate_job(
    pid: int,
    grace: float,
    wait: Callable[[int, float | None], bool] = wait_pid,
) -> bool:
    """SIGTERM, then SIGKILL if the job is still there after grace seconds.

    Returns:
        True once the job is gone.
    """
    if not signal_job(pid, signal.SIGTERM):
        return True
    if wait(pid, grace):
        return True
    log.warning("Job ignored SIGTERM, killing", job_id=pid, grace_seconds=grace)
    signal_job(pid, signal.SIGKILL)
    return wait(pid, grace)


# === Stop hook ===


def _invoke_stop_hook(config: SupervisorConfig, args: list[str] | None) -> None:
    cmd = config.stop_hook_command(args)
    log_path = config.log_file(os.getpid(), "stop")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    timeout = config.stop_hook_timeout_seconds
    try:
        with open(log_path, "ab") as out:
            result = subprocess.run(
                cmd,
                stdout=out,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=config.project_root,
                timeout=timeout,
            )
    except subprocess.TimeoutExpired:
        raise StopHookFailure(f"timed out after {timeout:g}s") from None
    except OSError as e:
        raise StopHookFailure(f"cannot run {cmd[0]}: {e}") from e
    if result.returncode != 0:
        raise StopHookFailure(f"exited with status {result.returncode}")


def run_stop_hook(config: SupervisorConfig, args: list[str] | None = None) -> bool:
    """Ask the worker binary to stop its outstanding commands.

    Never raises: a broken hook must not keep a job from being stopped.

    Returns:
        True if the hook ran and succeeded.
    """
    if not config.stop_command and not config.worker_command:
        log.debug("No stop hook configured")
        return False
    try:
        _invoke_stop_hook(config, args)
    except StopHookFailure as e:
        log.warning("Stop hook failed, stopping anyway", error=str(e))
        return False
    log.info("Stop hook finished")
    return True


# === Supervisor ===


class JobSupervisor:
    """Launches one worker, waits on it, and cleans up after it."""

    def __init__(
        self,
        config: SupervisorConfig,
        registry: JobRegistry | None = None,
        confirm: Callable[[str], bool] = prompt_tty,
        out: TextIO | None = None,
        echo: bool = True,
    ):
        self.config = config
        self.registry = registry or JobRegistry(config)
        self.confirm = confirm
        self.out = out or sys.stdout
        self.echo = echo
        self.pid = os.getpid()
        self.job: Job | None = None
        self.exit_status: int | None = None
        self.results: bool | None = None
        self._launcher: subprocess.Popen | None = None
        self._cursor: LogCursor | None = None
        self._interrupt_requested = False
        self._stop_requested = False
        self._previous_handlers: dict = {}

    @property
    def log_path(self):
        return self.config.log_file(self.pid)

    # --- launch ---

    def launch(self, args: list[str] | None = None) -> Job:
        """Start the worker chain and wait for it to announce its PID.

        Raises:
            LaunchFailure: The chain could not be started or never published
                a PID. Nothing is registered in that case.
        """
        args = list(args or [])
        command = self.config.launch_command(args)
        self.config.logs_dir.mkdir(parents=True, exist_ok=True)
        rendezvous = PidRendezvous.for_supervisor(self.config.state_dir, self.pid)
        rendezvous.discard()

        env = os.environ.copy()
        env.update(
            {
                ENV_HANDOFF_FILE: str(rendezvous.path),
                ENV_STATE_DIR: str(self.config.state_dir),
                ENV_SUPERVISOR_PID: str(self.pid),
                ENV_LOG_FILE: str(self.log_path),
            }
        )

        offset = self.log_path.stat().st_size if self.log_path.exists() else 0
        log.info("Launching worker", command=" ".join(command))
        with open(self.log_path, "ab") as log_fh:
            try:
                self._launcher = subprocess.Popen(
                    command,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    cwd=self.config.project_root,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                raise LaunchFailure(f"Cannot start {command[0]}: {e}") from e
        self._cursor = LogCursor(self.log_path, offset=offset)

        try:
            job_id = rendezvous.wait(
                self.config.handoff_timeout_seconds, self.config.poll_interval_seconds
            )
        except BaseException:
            # Includes Ctrl-C: the chain runs in its own session and would be orphaned
            self._abandon_launch(rendezvous)
            raise

        job = Job(
            job_id=job_id,
            launch_command=[*self.config.worker_command, *args],
            log_path=self.log_path,
            working_directory=self.config.project_root,
        )
        self.registry.register_local(job)
        self.registry.register_global(job)
        # The PID is on disk now; the handoff name may be reused
        rendezvous.discard()
        job.advance(JobState.RUNNING)
        self.job = job
        log.info("Job started", job_id=job_id, log_file=str(self.log_path))
        return job

    def _abandon_launch(self, rendezvous: PidRendezvous) -> None:
        launcher = self._launcher
        if launcher is not None and launcher.poll() is None:
            log.warning("Terminating launcher that never published a PID", pid=launcher.pid)
            terminate_job(launcher.pid, self.config.kill_grace_seconds, self._wait_launcher)
        rendezvous.discard()

    def _wait_launcher(self, pid: int, timeout: float | None) -> bool:
        assert self._launcher is not None
        try:
            self.exit_status = self._launcher.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    # --- signals ---

    def install_signal_handlers(self) -> None:
        self._previous_handlers = {
            signal.SIGINT: signal.signal(signal.SIGINT, self._on_interrupt),
            signal.SIGTERM: signal.signal(signal.SIGTERM, self._on_terminate),
        }

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers = {}

    def _on_interrupt(self, signum, frame) -> None:
        self._interrupt_requested = True

    def _on_terminate(self, signum, frame) -> None:
        self._stop_requested = True

    def request_interrupt(self) -> None:
        """Same as receiving SIGINT: stop after confirmation."""
        self._interrupt_requested = True

    def request_stop(self) -> None:
        """Stop without asking, at the next turn of the wait loop."""
        self._stop_requested = True

    # --- waiting ---

    def _require_job(self) -> Job:
        if self.job is None:
            raise RuntimeError("No job launched")
        return self.job

    def _wait_worker(self, timeout: float | None) -> bool:
        """Wait up to timeout for the worker to exit. True once it has."""
        job = self._require_job()
        if self._launcher is not None and self._launcher.pid == job.job_id:
            # The worker is our own child: wait on it to keep its exit status
            return self._wait_launcher(job.job_id, timeout)
        if self._launcher is not None:
            self._launcher.poll()  # Reap the intermediate once it is done
        return wait_pid(job.job_id, timeout)

    def _pump_log(self, final: bool = False) -> None:
        if self._cursor is None:
            return
        lines = self._cursor.read_new_lines()
        if final:
            lines += self._cursor.flush()
        if not self.echo:
            return
        for line in lines:
            print(strip_prefix(line), file=self.out, flush=True)

    def _sync_pause(self, job: Job) -> None:
        paused = check_pause_requested(self.config)
        if paused and job.state is JobState.RUNNING:
            job.advance(JobState.PAUSED)
            log.info("Job paused", job_id=job.job_id)
        elif not paused and job.state is JobState.PAUSED:
            job.advance(JobState.RUNNING)
            log.info("Job resumed", job_id=job.job_id)

    def wait(self) -> JobState:
        """Block until the worker exits or is stopped. No timeout."""
        job = self._require_job()
        while True:
            self._pump_log()
            if self._interrupt_requested:
                self._interrupt_requested = False
                if self.handle_interrupt():
                    return job.state
            if self._stop_requested:
                self._stop_requested = False
                return self.stop()
            self._sync_pause(job)
            if self._wait_worker(self.config.poll_interval_seconds):
                break

        self._pump_log(final=True)
        self.results = read_results(self.config, job.job_id)
        # exit_status is None when the worker is not our child: its status is unknown
        if self.results is not None or self.exit_status in (0, None):
            job.advance(JobState.COMPLETED)
        else:
            log.warning(
                "Worker exited without reporting results",
                job_id=job.job_id,
                exit_status=self.exit_status,
            )
            job.advance(JobState.CRASHED)
        log.info("Job finished", job_id=job.job_id, state=job.state.value)
        return job.state

    def handle_interrupt(self) -> bool:
        """Confirm on the terminal before stopping.

        Returns:
            True if the job was stopped; False leaves it running untouched.
        """
        job = self._require_job()
        if not is_running(job.job_id):
            return False
        if not self.confirm(f"\nJob {job.job_id} is still running. Stop it? [y/N] "):
            log.info("Interrupt declined, job keeps running", job_id=job.job_id)
            return False
        self.stop()
        return True

    # --- stopping ---

    def stop(self, hook_args: list[str] | None = None) -> JobState:
        """Terminate the worker, run its stop hook, and wait for it to exit."""
        job = self._require_job()
        job.advance(JobState.STOPPING)
        log.info("Stopping job", job_id=job.job_id)
        signal_job(job.job_id, signal.SIGTERM)
        run_stop_hook(self.config, hook_args)
        grace = self.config.kill_grace_seconds
        if not self._wait_worker(grace):
            log.warning("Job ignored SIGTERM, killing", job_id=job.job_id, grace_seconds=grace)
            signal_job(job.job_id, signal.SIGKILL)
            self._wait_worker(None)
        self._pump_log(final=True)
        self.results = read_results(self.config, job.job_id)
        job.advance(JobState.KILLED)
        log.info("Job killed", job_id=job.job_id)
        return job.state

    # --- after exit ---

    def finish(self) -> int:
        """Recovery and registry cleanup after the worker is gone.

        Returns:
            Process exit code for the supervisor.
        """
        job = self._require_job()
        config = self.config
        cleanup_launch_failure(config, self.registry, job.job_id, job.log_path)

        others = [
            other
            for other in self.registry.active_local_jobs()
            if other != job.job_id
            and os.path.lexists(self.registry.global_entry(other))
            and is_running(other)
        ]
        if others:
            log.info("Other jobs still running here, leaving unclean output", job_ids=others)
        else:
            clear_pause_file(config)
            try:
                moved = quarantine_unclean(config)
            except OSError as e:
                log.warning("Unclean output cleanup failed", error=str(e))
                moved = []
            if moved and self.echo:
                print(
                    f"Moved {len(moved)} partial output file(s) to {config.trash_dir}:",
                    file=self.out,
                )
                for original, _ in moved:
                    print(f"  {original}", file=self.out)

        try:
            self.registry.archive(job.job_id)
        except OSError as e:
            log.warning("Could not archive job", job_id=job.job_id, error=str(e))
        clear_results(config, job.job_id)

        if self.results is False:
            return 1
        return 0

    def run(self, args: list[str] | None = None) -> int:
        """launch -> wait -> finish, with signal handling around the wait."""
        self.launch(args)
        self.install_signal_handlers()
        try:
            self.wait()
        finally:
            self.restore_signal_handlers()
        return self.finish()
