"""Tests for shepherd.cli module."""

import os
import subprocess
import sys
from argparse import Namespace
from pathlib import Path
from unittest.mock import Mock

import pytest

from shepherd.cli import (
    build_parser,
    cmd_clean,
    cmd_history,
    cmd_log,
    cmd_oldjobs,
    cmd_pause,
    cmd_resume,
    cmd_run,
    cmd_status,
    cmd_stop,
    main,
    parse_args,
    with_default_command,
)
from shepherd.config import SupervisorConfig
from shepherd.registry import JobRegistry
from shepherd.state import Job
from shepherd.supervisor import terminate_job

FAKE_WORKER = Path(__file__).parent / "fixtures" / "fake_worker.py"


def _make_config(tmp_path: Path, **overrides) -> SupervisorConfig:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    defaults: dict = {"project_root": project, "home_dir": tmp_path / "home"}
    defaults.update(overrides)
    return SupervisorConfig(**defaults)


def _register(config: SupervisorConfig, job_id: int) -> JobRegistry:
    registry = JobRegistry(config)
    job = Job(
        job_id=job_id,
        launch_command=["worker", "--flag"],
        log_path=config.log_file(1),
        working_directory=config.project_root,
    )
    registry.register_local(job)
    registry.register_global(job)
    return registry


def _alive(monkeypatch, pids: set[int]) -> None:
    monkeypatch.setattr("shepherd.cli.is_running", lambda pid: pid in pids)


class TestDefaultCommand:
    @pytest.mark.parametrize(
        ("argv", "expected"),
        [
            ([], ["run"]),
            (["--fast", "x"], ["run", "--fast", "x"]),
            (["stop"], ["stop"]),
            (
                ["--project-root", "/p", "log", "-n", "5"],
                ["--project-root", "/p", "log", "-n", "5"],
            ),
            (["--project-root", "/p", "--fast"], ["--project-root", "/p", "run", "--fast"]),
            (
                ["--log-level=debug", "--no-launcher", "x"],
                ["--log-level=debug", "--no-launcher", "run", "x"],
            ),
            (["--help"], ["--help"]),
        ],
    )
    def test_with_default_command(self, argv, expected):
        assert with_default_command(argv) == expected


class TestParser:
    def test_run_collects_worker_args(self):
        args = build_parser().parse_args(["run", "--yes", "--", "--fast", "target"])
        assert args.command == "run"
        assert args.yes is True
        assert args.args[-2:] == ["--fast", "target"]

    def test_log_rows(self):
        args = build_parser().parse_args(["log", "-n", "12"])
        assert args.rows == 12

    def test_common_options_after_command(self):
        args = build_parser().parse_args(["status", "--project-root", "/p"])
        assert args.project_root == "/p"

    def test_unset_common_options_absent(self):
        args = build_parser().parse_args(["status"])
        assert not hasattr(args, "project_root")

    def test_worker_options_pass_through(self):
        args = parse_args(["--fast", "--level", "3", "target"])
        assert args.command == "run"
        assert args.args == ["--fast", "--level", "3", "target"]

    def test_unknown_option_rejected_without_args(self):
        with pytest.raises(SystemExit):
            parse_args(["status", "--bogus"])


class TestNeverRun:
    @pytest.mark.parametrize("command", [cmd_pause, cmd_resume, cmd_status, cmd_log])
    def test_reports_no_job(self, tmp_path, capsys, command):
        assert command(Namespace(), _make_config(tmp_path)) == 1
        assert "No job has been run here" in capsys.readouterr().out

    def test_stop_without_job(self, tmp_path, capsys):
        assert cmd_stop(Namespace(args=[]), _make_config(tmp_path, worker_command=[])) == 1
        assert "No running job" in capsys.readouterr().out

    def test_oldjobs_empty(self, tmp_path, capsys):
        assert cmd_oldjobs(Namespace(), _make_config(tmp_path)) == 0
        assert "No active jobs" in capsys.readouterr().out

    def test_run_without_worker(self, tmp_path):
        assert cmd_run(Namespace(args=[], yes=True), _make_config(tmp_path)) == 2


class TestRunGuard:
    def test_declined_prompt_launches_nothing(self, tmp_path, monkeypatch):
        config = _make_config(tmp_path)
        registry = _register(config, 5555)
        _alive(monkeypatch, {5555})
        questions = []

        def decline(question):
            questions.append(question)
            return False

        monkeypatch.setattr("shepherd.cli.prompt_tty", decline)
        supervisor_cls = Mock()
        monkeypatch.setattr("shepherd.cli.JobSupervisor", supervisor_cls)

        assert cmd_run(Namespace(args=["--fast"], yes=False), config) == 1

        assert len(questions) == 1
        assert "5555" in questions[0]
        supervisor_cls.assert_not_called()
        assert registry.active_local_jobs() == [5555]

    def test_yes_skips_prompt(self, tmp_path, monkeypatch):
        config = _make_config(tmp_path)
        _register(config, 5555)
        _alive(monkeypatch, {5555})
        monkeypatch.setattr("shepherd.cli.prompt_tty", Mock(side_effect=AssertionError))
        supervisor_cls = Mock()
        supervisor_cls.return_value.run.return_value = 0
        monkeypatch.setattr("shepherd.cli.JobSupervisor", supervisor_cls)

        assert cmd_run(Namespace(args=["--", "--fast"], yes=True), config) == 0
        supervisor_cls.return_value.run.assert_called_once_with(["--fast"])


@pytest.mark.slow
class TestStopRunningJob:
    def test_hook_runs_before_termination(self, tmp_path, monkeypatch, capsys):
        config = _make_config(tmp_path, worker_command=[sys.executable, str(FAKE_WORKER)])
        config.state_dir.mkdir(parents=True)
        worker = subprocess.Popen(
            [sys.executable, str(FAKE_WORKER), "--sleep", "30"],
            cwd=config.project_root,
            start_new_session=True,
        )
        try:
            registry = _register(config, worker.pid)
            order = []

            def terminate(job_id, grace):
                order.append(((config.state_dir / "stop-calls").exists(), worker.poll() is None))
                return terminate_job(job_id, grace)

            monkeypatch.setattr("shepherd.cli.terminate_job", terminate)

            assert cmd_stop(Namespace(args=[]), config) == 0

            assert order == [(True, True)]
            assert f"Stopping job {worker.pid}" in capsys.readouterr().out
            assert not os.path.lexists(registry.global_entry(worker.pid))
            assert os.path.lexists(registry.completed_entry(worker.pid))
        finally:
            if worker.poll() is None:
                worker.kill()
            worker.wait(timeout=5)


class TestPauseResume:
    def test_pause_then_resume(self, tmp_path, capsys):
        config = _make_config(tmp_path)
        _register(config, 4242)
        assert cmd_pause(Namespace(), config) == 0
        assert config.pause_file.read_text().strip() == "4242"
        assert cmd_resume(Namespace(), config) == 0
        assert not config.pause_file.exists()
        out = capsys.readouterr().out
        assert "Pause requested for job 4242" in out
        assert "Resume requested for job 4242" in out

    def test_resume_when_not_paused(self, tmp_path, capsys):
        config = _make_config(tmp_path)
        _register(config, 4242)
        assert cmd_resume(Namespace(), config) == 0
        assert "not paused" in capsys.readouterr().out


class TestStatusAndLog:
    def test_status_of_finished_job(self, tmp_path, capsys):
        config = _make_config(tmp_path)
        _register(config, 4242)
        assert cmd_status(Namespace(), config) == 0
        out = capsys.readouterr().out
        assert "4242" in out
        assert "worker --flag" in out

    def test_log_of_finished_job(self, tmp_path, capsys, monkeypatch):
        config = _make_config(tmp_path)
        _register(config, 4242)
        _alive(monkeypatch, set())
        config.logs_dir.mkdir(parents=True)
        config.log_file(1).write_text("[INFO]\tone\n[ERROR]\ttwo\n[INFO]\tthree\n")

        assert cmd_log(Namespace(rows=2, args=[]), config) == 0
        out = capsys.readouterr().out
        assert "two\nthree\n" in out
        assert "one" not in out
        assert "job 4242 is not running" in out

    def test_errors_of_finished_job(self, tmp_path, capsys, monkeypatch):
        config = _make_config(tmp_path)
        _register(config, 4242)
        _alive(monkeypatch, set())
        config.logs_dir.mkdir(parents=True)
        config.log_file(1).write_text("[INFO]\tone\n[ERROR]\ttwo\n[INFO]\tthree\n")

        assert cmd_log(Namespace(rows=10, args=[]), config, errors=True) == 0
        out = capsys.readouterr().out
        assert "two" in out
        assert "three" not in out

    def test_log_missing_file(self, tmp_path):
        config = _make_config(tmp_path, log_wait_seconds=0.05)
        _register(config, 4242)
        assert cmd_log(Namespace(rows=None, args=[]), config) == 1


class TestHistoryAndClean:
    def test_history(self, tmp_path, capsys):
        config = _make_config(tmp_path)
        config.state_dir.mkdir(parents=True)
        config.history_file.write_text("worker a\nworker b\n")
        assert cmd_history(Namespace(), config) == 0
        assert capsys.readouterr().out == "worker a\nworker b\n"

    def test_no_history(self, tmp_path, capsys):
        assert cmd_history(Namespace(), _make_config(tmp_path)) == 0
        assert "No history" in capsys.readouterr().out

    def test_clean_drops_dead_jobs_only(self, tmp_path, monkeypatch):
        config = _make_config(tmp_path)
        registry = _register(config, 4242)
        _register(config, 5555)
        _alive(monkeypatch, {5555})

        assert cmd_clean(Namespace(), config) == 0

        assert registry.active_local_jobs() == [5555]
        assert os.path.lexists(registry.completed_entry(4242))
        assert os.path.lexists(registry.global_entry(5555))


class TestMain:
    def test_history_exit_code(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["--project-root", str(tmp_path), "history"])
        assert exc.value.code == 0

    def test_status_exit_code_never_run(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["status", "--project-root", str(tmp_path)])
        assert exc.value.code == 1
