"""Recovery passes run after a job exits.

Both passes are idempotent and safe to run when there is nothing to do:

- launch-failure cleanup drops every trace of a job whose worker exited
  before doing useful work (it says so with a `no-work/<job_id>` marker);
- unclean-output cleanup quarantines files that were being written when a
  worker died. A file listed in an unclean record may be complete or
  partial; we cannot tell, so every listed file goes to the trash.
"""

import contextlib
import os
import shutil
from pathlib import Path

from .config import SupervisorConfig
from .logging import get_logger
from .registry import JobRegistry

log = get_logger("cleanup")


# === Launch-failure cleanup ===


def cleanup_launch_failure(
    config: SupervisorConfig,
    registry: JobRegistry,
    job_id: int | None,
    log_path: Path | None = None,
) -> bool:
    """Remove a job's log, active entries and prompt state if it did no work.

    Returns:
        True if the job had the no-work marker and was cleaned up.
    """
    if job_id is None:
        return False
    marker = config.no_work_dir / str(job_id)
    if not marker.exists():
        return False

    log.info("Worker exited before doing any work", job_id=job_id)
    if log_path is not None:
        with contextlib.suppress(FileNotFoundError):
            log_path.unlink()
    registry.remove_active(job_id)
    for prompt_file in config.state_dir.glob(f"prompt-{job_id}*"):
        with contextlib.suppress(FileNotFoundError):
            prompt_file.unlink()
    with contextlib.suppress(FileNotFoundError):
        marker.unlink()
    return True


# === Unclean-output quarantine ===


def _relative_to_project(config: SupervisorConfig, path: Path) -> Path:
    """Path to mirror under the trash directory."""
    try:
        return path.relative_to(config.project_root)
    except ValueError:
        # Outside the project: keep the full path minus its anchor
        return Path(*path.parts[1:]) if path.is_absolute() else path


def free_trash_path(trash_dir: Path, relative: Path) -> Path:
    """First unused trash location for relative: name, name.1, name.2, ..."""
    candidate = trash_dir / relative
    suffix = 0
    while os.path.lexists(candidate):
        suffix += 1
        candidate = trash_dir / relative.parent / f"{relative.name}.{suffix}"
    return candidate


def quarantine_file(config: SupervisorConfig, path: Path) -> Path | None:
    """Move one file into the trash.

    Returns:
        Its trash location, or None if it vanished before it could be moved.
    """
    source = Path(os.path.normpath(path if path.is_absolute() else config.project_root / path))
    if not os.path.lexists(source):
        return None
    dest = free_trash_path(config.trash_dir, _relative_to_project(config, source))
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.move(str(source), str(dest))
    except FileNotFoundError:
        return None  # Removed between listing and moving
    return dest


def quarantine_unclean(config: SupervisorConfig) -> list[tuple[Path, Path]]:
    """Quarantine everything listed in unclean records, then drop the records.

    A record whose files could not all be handled is kept for the next pass.

    Returns:
        (original, trash location) for every file moved.
    """
    unclean_dir = config.unclean_dir
    if not unclean_dir.is_dir():
        return []

    moved: list[tuple[Path, Path]] = []
    for record in sorted(unclean_dir.iterdir()):
        if not record.is_file():
            continue
        try:
            listed = [line.strip() for line in record.read_text().splitlines()]
        except FileNotFoundError:
            continue

        failed = False
        for entry in filter(None, listed):
            try:
                dest = quarantine_file(config, Path(entry))
            except OSError as e:
                log.warning("Could not quarantine file", path=entry, error=str(e))
                failed = True
                continue
            if dest is not None:
                moved.append((Path(entry), dest))
                log.info("Quarantined partial output", path=entry, trash=str(dest))

        if not failed:
            with contextlib.suppress(FileNotFoundError):
                record.unlink()
    return moved
