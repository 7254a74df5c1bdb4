"""Push a kernel, record the run, and optionally wait for its outputs.

A submission moves through ``idle -> syncing -> submitting`` and ends in
``submitted`` or ``submit_failed``. When auto-download is on, a submitted run
continues into ``polling`` and finishes as ``complete`` (outputs appeared) or
``timed_out``. Polling is bounded only by wall-clock time: every failed fetch
counts as "not ready yet".
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from kagglerun._logging import get_logger
from kagglerun.kaggle_cli import CliInvoker
from kagglerun.models import (
    CliError,
    ConfigError,
    JobMetadata,
    KaggleRunError,
    ProjectConfig,
    RunRecord,
)
from kagglerun.project import NOTEBOOK_SUFFIX, ProjectStore
from kagglerun.runlog import RunLog
from kagglerun.settings import MIN_POLL_INTERVAL_SECONDS, Settings
from kagglerun.sinks import NullSink, OutputSink
from kagglerun.utils import dir_has_entries

_log = get_logger("orchestrator")


class RunState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"
    POLLING = "polling"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"


RunObserver = Callable[[RunRecord], None]


@dataclass(frozen=True)
class PollResult:
    state: RunState
    attempts: int
    elapsed_sec: float
    output_dir: Path

    def to_json(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "elapsed_sec": round(self.elapsed_sec, 3),
            "output_dir": str(self.output_dir),
        }


@dataclass(frozen=True)
class RunOutcome:
    state: RunState
    metadata: JobMetadata
    url: str | None = None
    record: RunRecord | None = None
    poll: PollResult | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "kernel": self.metadata.id,
            "code_file": self.metadata.code_file,
            "url": self.url,
            "recorded_at": self.record.timestamp if self.record else None,
            "poll": self.poll.to_json() if self.poll else None,
        }


def run_url_pattern(site_url: str) -> re.Pattern[str]:
    host = re.sub(r"^https?://", "", site_url.rstrip("/")).split("/", 1)[0]
    return re.compile(rf"https?://{re.escape(host)}/[\w\-/]+")


def extract_run_url(text: str, site_url: str) -> str | None:
    match = run_url_pattern(site_url).search(text)
    return match.group(0) if match else None


class RunOrchestrator:
    def __init__(
        self,
        store: ProjectStore,
        cli: CliInvoker,
        *,
        settings: Settings | None = None,
        sink: OutputSink | None = None,
        run_log: RunLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.cli = cli
        self.settings = settings if settings is not None else Settings()
        self.sink: OutputSink = sink if sink is not None else NullSink()
        self.run_log = run_log if run_log is not None else RunLog(store.root)
        self.state = RunState.IDLE
        self._observers: list[RunObserver] = []
        self._sleep = sleep
        self._clock = clock

    def add_observer(self, observer: RunObserver) -> None:
        self._observers.append(observer)

    def _transition(self, state: RunState) -> None:
        _log.debug("run_state from=%s to=%s", self.state.value, state.value)
        self.state = state

    def _load_config(self) -> ProjectConfig:
        return self.store.load(
            default_accelerator=self.settings.default_accelerator,
            default_internet=self.settings.default_internet,
        )

    def submit(
        self, *, entry_file: str | None = None, auto_download: bool = False
    ) -> RunOutcome:
        """Sync project files, push the kernel and optionally wait for outputs."""
        self._transition(RunState.SYNCING)
        config = self._load_config()
        if entry_file is not None:
            config = replace(config, entry_file=entry_file)
        metadata = self.store.sync_metadata(config)

        self._transition(RunState.SUBMITTING)
        self.sink.line(f"Pushing {metadata.code_file} to Kaggle...")
        try:
            result = self.cli.invoke(["kernels", "push", "-p", "."], cwd=self.store.root)
        except KaggleRunError:
            self._transition(RunState.SUBMIT_FAILED)
            raise

        url = extract_run_url(result.output, self.settings.site_url)
        record: RunRecord | None = None
        self._transition(RunState.SUBMITTED)
        if url:
            record = self.run_log.append(url)
            _log.info("run_recorded kernel=%s url=%s", metadata.id, url)
            for observer in self._observers:
                observer(record)
        else:
            _log.info("run_submitted kernel=%s url=<none>", metadata.id)

        kernel_id = metadata.id or config.job_slug
        if not auto_download or not kernel_id:
            return RunOutcome(
                state=self.state, metadata=metadata, url=url, record=record
            )

        poll = self.poll_for_outputs(
            kernel_id,
            self.store.output_dir(config),
            interval_seconds=self.settings.poll_interval_seconds,
            timeout_seconds=self.settings.poll_timeout_seconds,
        )
        return RunOutcome(
            state=poll.state, metadata=metadata, url=url, record=record, poll=poll
        )

    def run_file(
        self, path: str | Path, *, auto_download: bool | None = None
    ) -> RunOutcome:
        """Make *path* the project's code file and submit it."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.store.root / candidate
        candidate = candidate.resolve()
        if candidate.suffix.lower() != NOTEBOOK_SUFFIX:
            raise ConfigError(f"Open a {NOTEBOOK_SUFFIX} notebook to run on Kaggle: {path}")
        if not candidate.is_file():
            raise ConfigError(f"Notebook not found: {candidate}")
        try:
            relative = candidate.relative_to(self.store.root.resolve())
        except ValueError as exc:
            raise ConfigError(
                f"{candidate} is outside the project root {self.store.root}"
            ) from exc
        wait = auto_download
        if wait is None:
            wait = self.settings.auto_download_on_complete
        return self.submit(entry_file=relative.as_posix(), auto_download=wait)

    def poll_for_outputs(
        self,
        kernel_id: str,
        output_dir: Path,
        *,
        interval_seconds: int,
        timeout_seconds: int,
    ) -> PollResult:
        self._transition(RunState.POLLING)
        output_dir.mkdir(parents=True, exist_ok=True)
        sleep_seconds = float(max(MIN_POLL_INTERVAL_SECONDS, interval_seconds))
        started = self._clock()
        attempts = 0
        _log.info(
            "poll_start kernel=%s interval=%s timeout=%s dest=%s",
            kernel_id,
            sleep_seconds,
            timeout_seconds,
            output_dir,
        )

        while self._clock() - started < timeout_seconds:
            attempts += 1
            try:
                self.cli.invoke(
                    ["kernels", "output", kernel_id, "-p", str(output_dir)],
                    cwd=self.store.root,
                )
            except CliError as exc:
                _log.debug("poll_not_ready attempt=%d exit=%s", attempts, exc.exit_code)
            else:
                if dir_has_entries(output_dir):
                    self._transition(RunState.COMPLETE)
                    self.sink.line(f"Kaggle run completed. Outputs downloaded to {output_dir}")
                    return PollResult(
                        state=RunState.COMPLETE,
                        attempts=attempts,
                        elapsed_sec=self._clock() - started,
                        output_dir=output_dir,
                    )
            self._sleep(sleep_seconds)

        self._transition(RunState.TIMED_OUT)
        self.sink.line(
            "Timed out waiting for Kaggle run to complete. "
            "Download outputs later with 'kagglerun outputs'."
        )
        _log.info("poll_timeout kernel=%s attempts=%d", kernel_id, attempts)
        return PollResult(
            state=RunState.TIMED_OUT,
            attempts=attempts,
            elapsed_sec=self._clock() - started,
            output_dir=output_dir,
        )

    def download_outputs(self) -> Path:
        config = self._load_config()
        metadata = self.store.read_metadata() or {}
        kernel_id = str(metadata.get("id") or config.job_slug)
        dest = self.store.output_dir(config)
        dest.mkdir(parents=True, exist_ok=True)
        self.cli.invoke(["kernels", "output", kernel_id, "-p", str(dest)], cwd=self.store.root)
        return dest
