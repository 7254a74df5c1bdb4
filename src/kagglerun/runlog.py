from __future__ import annotations

import re
from pathlib import Path

from kagglerun._logging import get_logger
from kagglerun.models import RunItem, RunRecord
from kagglerun.utils import has_file_modified_since, parse_iso_timestamp, utc_now_iso

RUN_LOG_FILE = ".run.log"
RECENT_RUNS_LIMIT = 50
_SEPARATOR_RE = re.compile(r"\s+\|\s+")

_log = get_logger("runlog")


class RunLog:
    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def path(self) -> Path:
        return self.root / RUN_LOG_FILE

    def append(self, url: str, *, timestamp: str | None = None) -> RunRecord:
        record = RunRecord(timestamp=timestamp or utc_now_iso(), url=url)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(record.to_line() + "\n")
        except OSError as exc:
            _log.error("Failed to append run record to %s: %s", self.path, exc)
            raise
        return record

    def records(self, *, limit: int | None = RECENT_RUNS_LIMIT) -> list[RunRecord]:
        if not self.path.exists():
            return []
        records: list[RunRecord] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                parts = _SEPARATOR_RE.split(line, maxsplit=1)
                url = parts[1] if len(parts) > 1 else ""
                records.append(RunRecord(timestamp=parts[0], url=url))
        if limit is not None:
            records = records[-limit:]
        return records

    def items(
        self, output_dir: Path, *, limit: int | None = RECENT_RUNS_LIMIT
    ) -> list[RunItem]:
        """Run history; only the most recent entry carries a status."""
        records = self.records(limit=limit)
        items = [RunItem(timestamp=rec.timestamp, url=rec.url) for rec in records]
        if not items:
            return items
        latest = records[-1]
        started = parse_iso_timestamp(latest.timestamp)
        status = None
        if started is not None:
            status = (
                "complete" if has_file_modified_since(output_dir, started) else "pending"
            )
        items[-1] = RunItem(
            timestamp=latest.timestamp, url=latest.url, status=status, is_latest=True
        )
        return items
