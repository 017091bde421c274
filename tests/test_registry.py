"""Tests for shepherd.registry module."""

import os
from pathlib import Path

from shepherd.config import SupervisorConfig
from shepherd.registry import JobRegistry
from shepherd.state import Job, request_pause


def _make_config(tmp_path: Path) -> SupervisorConfig:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return SupervisorConfig(project_root=project, home_dir=tmp_path / "home")


def _make_job(config: SupervisorConfig, job_id: int, command: list[str] | None = None) -> Job:
    return Job(
        job_id=job_id,
        launch_command=command or ["worker", "--flag", "two words"],
        log_path=config.log_file(1),
        working_directory=config.project_root,
    )


def _registry(config: SupervisorConfig, alive: set[int] | None = None) -> JobRegistry:
    live = alive or set()
    return JobRegistry(config, alive=lambda pid: pid in live)


class TestRegistration:
    def test_local_entry_holds_command(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        entry = registry.register_local(_make_job(config, 4242))
        assert entry == config.active_jobs_dir / "4242"
        assert entry.read_text() == "worker --flag 'two words'\n"
        assert registry.launch_command(4242) == "worker --flag 'two words'"

    def test_local_entry_appends(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        registry.register_local(_make_job(config, 4242, ["first"]))
        registry.register_local(_make_job(config, 4242, ["second"]))
        assert registry.local_entry(4242).read_text() == "first\nsecond\n"

    def test_global_entry_points_at_local(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        job = _make_job(config, 4242)
        local = registry.register_local(job)
        entry = registry.register_global(job)
        assert entry == config.global_active_dir / "4242"
        assert registry.resolve_global(4242) == local.resolve()

    def test_stale_global_entry_replaced(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        config.global_active_dir.mkdir(parents=True)
        (config.global_active_dir / "4242").write_text("/somewhere/else/active-jobs/4242\n")
        job = _make_job(config, 4242)
        registry.register_local(job)
        registry.register_global(job)
        assert registry.resolve_global(4242) == registry.local_entry(4242).resolve()
        assert [p.name for p in config.global_active_dir.iterdir()] == ["4242"]

    def test_pointer_file_resolves(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        config.global_active_dir.mkdir(parents=True)
        target = config.active_jobs_dir / "77"
        (config.global_active_dir / "77").write_text(f"{target}\n")
        assert registry.resolve_global(77) == target


class TestQueries:
    def test_never_run(self, tmp_path):
        registry = _registry(_make_config(tmp_path))
        assert registry.most_recent_job() is None
        assert registry.describe(None) == "never run"
        assert registry.launch_command(1) is None

    def test_most_recent_by_mtime(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        for job_id in (300, 100, 200):
            registry.register_local(_make_job(config, job_id))
        os.utime(registry.local_entry(300), (1000, 1000))
        os.utime(registry.local_entry(100), (3000, 3000))
        os.utime(registry.local_entry(200), (2000, 2000))
        assert registry.most_recent_job() == 100
        assert registry.active_local_jobs() == [100, 200, 300]

    def test_describe(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config, alive={4242})
        assert registry.describe(4242) == "running"
        assert registry.describe(1) == "finished"
        request_pause(config, 4242)
        assert registry.describe(4242) == "paused"


class TestListGlobal:
    def _register(self, config: SupervisorConfig, registry: JobRegistry, job_id: int) -> None:
        job = _make_job(config, job_id)
        registry.register_local(job)
        registry.register_global(job)

    def test_live_job_listed(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config, alive={4242})
        self._register(config, registry, 4242)
        jobs = registry.list_global()
        assert len(jobs) == 1
        assert jobs[0].job_id == 4242
        assert jobs[0].working_directory == config.project_root
        assert jobs[0].launch_command == "worker --flag 'two words'"

    def test_dead_job_archived(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config, alive=set())
        self._register(config, registry, 4242)
        assert registry.list_global() == []
        assert not os.path.lexists(registry.global_entry(4242))
        assert os.path.lexists(registry.completed_entry(4242))
        # Local entry stays until explicit cleanup
        assert registry.local_entry(4242).exists()

    def test_missing_local_entry_reconciled(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config, alive={4242})
        self._register(config, registry, 4242)
        registry.local_entry(4242).unlink()
        assert registry.list_global() == []
        assert os.path.lexists(registry.completed_entry(4242))

    def test_ignores_non_job_names(self, tmp_path):
        config = _make_config(tmp_path)
        config.global_active_dir.mkdir(parents=True)
        (config.global_active_dir / ".4242.1.tmp").write_text("x")
        assert _registry(config, alive={4242}).list_global() == []

    def test_empty_when_no_directory(self, tmp_path):
        assert _registry(_make_config(tmp_path)).list_global() == []


class TestArchive:
    def test_idempotent(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        job = _make_job(config, 4242)
        registry.register_local(job)
        registry.register_global(job)
        assert registry.archive(4242) is True
        assert registry.archive(4242) is False
        assert os.path.lexists(registry.completed_entry(4242))

    def test_nothing_to_archive(self, tmp_path):
        assert _registry(_make_config(tmp_path)).archive(1) is False

    def test_remove_active(self, tmp_path):
        config = _make_config(tmp_path)
        registry = _registry(config)
        job = _make_job(config, 4242)
        registry.register_local(job)
        registry.register_global(job)
        registry.remove_active(4242)
        registry.remove_active(4242)
        assert registry.active_local_jobs() == []
        assert not os.path.lexists(registry.global_entry(4242))
