"""Tests for shepherd.state module."""

from pathlib import Path

import pytest

from shepherd.config import SupervisorConfig
from shepherd.state import (
    TERMINAL_STATES,
    InvalidTransition,
    Job,
    JobState,
    LaunchFailure,
    SupervisorError,
    check_pause_requested,
    clear_pause_file,
    clear_results,
    read_results,
    request_pause,
)


def _make_job(tmp_path: Path, job_id: int = 4242) -> Job:
    return Job(
        job_id=job_id,
        launch_command=["worker", "--flag"],
        log_path=tmp_path / "1.log",
        working_directory=tmp_path,
    )


class TestJobTransitions:
    def test_starts_in_starting(self, tmp_path):
        job = _make_job(tmp_path)
        assert job.state is JobState.STARTING
        assert not job.is_active
        assert not job.is_finished

    def test_normal_completion(self, tmp_path):
        job = _make_job(tmp_path)
        job.advance(JobState.RUNNING)
        assert job.is_active
        job.advance(JobState.COMPLETED)
        assert job.is_finished
        assert job.history == [JobState.STARTING, JobState.RUNNING]

    def test_pause_and_resume(self, tmp_path):
        job = _make_job(tmp_path)
        job.advance(JobState.RUNNING)
        job.advance(JobState.PAUSED)
        assert job.is_active
        job.advance(JobState.RUNNING)
        assert job.state is JobState.RUNNING

    def test_stop_from_paused(self, tmp_path):
        job = _make_job(tmp_path)
        job.advance(JobState.RUNNING)
        job.advance(JobState.PAUSED)
        job.advance(JobState.STOPPING)
        job.advance(JobState.KILLED)
        assert job.state is JobState.KILLED

    def test_cannot_skip_running(self, tmp_path):
        job = _make_job(tmp_path)
        with pytest.raises(InvalidTransition, match="starting -> completed"):
            job.advance(JobState.COMPLETED)
        assert job.state is JobState.STARTING

    def test_stopping_only_ends_killed(self, tmp_path):
        job = _make_job(tmp_path)
        job.advance(JobState.RUNNING)
        job.advance(JobState.STOPPING)
        with pytest.raises(InvalidTransition):
            job.advance(JobState.COMPLETED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, tmp_path, terminal):
        job = _make_job(tmp_path)
        job.state = terminal
        for state in JobState:
            with pytest.raises(InvalidTransition):
                job.advance(state)

    def test_error_taxonomy(self):
        assert issubclass(LaunchFailure, SupervisorError)
        assert issubclass(InvalidTransition, ValueError)


class TestResults:
    def _config(self, tmp_path: Path) -> SupervisorConfig:
        return SupervisorConfig(project_root=tmp_path, home_dir=tmp_path / "home")

    def _write(self, config: SupervisorConfig, job_id: int, text: str) -> None:
        config.results_dir.mkdir(parents=True, exist_ok=True)
        (config.results_dir / str(job_id)).write_text(text)

    def test_missing_marker(self, tmp_path):
        assert read_results(self._config(tmp_path), 7) is None

    @pytest.mark.parametrize("text", ["success\n", "OK", "0", "passed 12 tests"])
    def test_success_words(self, tmp_path, text):
        config = self._config(tmp_path)
        self._write(config, 7, text)
        assert read_results(config, 7) is True

    @pytest.mark.parametrize("text", ["failed\n", "1", ""])
    def test_failure(self, tmp_path, text):
        config = self._config(tmp_path)
        self._write(config, 7, text)
        assert read_results(config, 7) is False

    def test_clear_results(self, tmp_path):
        config = self._config(tmp_path)
        self._write(config, 7, "ok")
        clear_results(config, 7)
        clear_results(config, 7)
        assert read_results(config, 7) is None


class TestPauseMarker:
    def test_request_and_clear(self, tmp_path):
        config = SupervisorConfig(project_root=tmp_path)
        assert not check_pause_requested(config)
        request_pause(config, 99)
        assert check_pause_requested(config)
        assert config.pause_file.read_text().strip() == "99"
        assert clear_pause_file(config) is True
        assert clear_pause_file(config) is False
        assert not check_pause_requested(config)
