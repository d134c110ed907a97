"""Append-only activity and audit logs.

One dated text file per day, one line per significant event:

    [2026-02-15T10:00:03+00:00] Imported ELECTRIC ... because missing_intervals=2; backfill=14d

Writing a log line never raises; a failure to log must not abort an import.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_line(message: str, now: datetime) -> str:
    text = re.sub(r"[\r\n]+", " ", str(message)).strip()
    return f"[{now.isoformat(timespec='seconds')}] {text}"


def _append(path: Path, line: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        return True
    except OSError as e:
        logger.warning("log_append_failed", path=str(path), error=str(e))
        return False


class ActivityLog:
    """Daily activity log under log_dir (activity-YYYY-MM-DD.log)."""

    def __init__(self, log_dir: Path, clock: Clock = utc_now):
        self.log_dir = Path(log_dir)
        self.clock = clock

    def path_for(self, day: datetime | None = None) -> Path:
        day = day or self.clock()
        return self.log_dir / f"activity-{day.date().isoformat()}.log"

    def append(self, message: str) -> None:
        now = self.clock()
        _append(self.path_for(now), format_line(message, now))


class AuditLog:
    """Dated audit run log, mirrored into the activity log with an [AUDIT] prefix."""

    def __init__(
        self,
        log_dir: Path,
        activity: ActivityLog,
        clock: Clock = utc_now,
        echo: Callable[[str], None] | None = None,
    ):
        self.activity = activity
        self.clock = clock
        self.echo = echo
        self.path = Path(log_dir) / f"audit-{clock().date().isoformat()}.log"

    def line(self, message: str) -> None:
        line = format_line(message, self.clock())
        if self.echo:
            self.echo(line)
        self.activity.append(f"[AUDIT] {message}")
        _append(self.path, line)
