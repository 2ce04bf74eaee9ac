"""Date-stamped log files and retention cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class DateStampedFileHandler(logging.FileHandler):
    """Write to ``<directory>/<YYYY-MM-DD>/<prefix>_<time>.log`` (UTC)."""

    def __init__(
        self,
        directory: str | Path,
        *,
        prefix: str = "app",
        encoding: str | None = "utf-8",
        delay: bool = False,
        current_time: datetime | None = None,
    ) -> None:
        timestamp = (current_time or datetime.now(timezone.utc)).astimezone(
            timezone.utc
        )
        date_folder = timestamp.strftime("%Y-%m-%d")
        file_name = f"{prefix}_{timestamp.strftime('%Y-%m-%d_%H-%M-%S')}_UTC.log"
        log_path = (Path(directory) / date_folder / file_name).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path = log_path
        super().__init__(log_path, mode="a", encoding=encoding, delay=delay)

    def _open(self):
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        return super()._open()


def cleanup_old_logs(
    log_directories: list[str | Path],
    retention_hours: int,
) -> tuple[int, int]:
    """
    Delete ``*.log`` files older than the retention window.

    Returns:
        Tuple of (files_deleted, errors_encountered). A retention of 0 disables
        cleanup.
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
            except OSError as exc:
                errors += 1
                logger.warning("Failed to delete %s: %s", log_file, exc)

        # Remove date folders emptied by the sweep
        for date_dir in dir_path.iterdir():
            if date_dir.is_dir() and not any(date_dir.iterdir()):
                try:
                    date_dir.rmdir()
                except OSError:
                    errors += 1

    return (files_deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs"]
