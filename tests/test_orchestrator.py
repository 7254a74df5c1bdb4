from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from kagglerun.models import CliError, CliResult, ConfigError, NoCredentials, RunRecord
from kagglerun.orchestrator import RunOrchestrator, RunState, extract_run_url
from kagglerun.project import ProjectStore
from kagglerun.runlog import RunLog
from kagglerun.settings import Settings

_PUSH_OUTPUT = (
    "Kernel version 1 successfully pushed.  Please check progress at "
    "https://service.example/code/bob/my-run\n"
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _FakeCli:
    def __init__(
        self, respond: Callable[[tuple[str, ...], Path | None], CliResult | None]
    ) -> None:
        self._respond = respond
        self.calls: list[tuple[tuple[str, ...], Path | None]] = []

    def invoke(self, args: Sequence[str], cwd: str | Path | None = None) -> CliResult:
        arg_tuple = tuple(args)
        cwd_path = Path(cwd) if cwd is not None else None
        self.calls.append((arg_tuple, cwd_path))
        result = self._respond(arg_tuple, cwd_path)
        return result if result is not None else CliResult("", "", arg_tuple)


def _outputs_after(failures: int, *, push_output: str = _PUSH_OUTPUT) -> Callable[..., Any]:
    attempts = {"count": 0}

    def _respond(args: tuple[str, ...], cwd: Path | None) -> CliResult | None:
        if args[:2] == ("kernels", "push"):
            return CliResult(push_output, "", args)
        if args[:2] == ("kernels", "output"):
            attempts["count"] += 1
            if attempts["count"] <= failures:
                raise CliError("Kernel is still running", args=args, exit_code=1)
            dest = Path(args[args.index("-p") + 1])
            (dest / "submission.csv").write_text("id,value\n1,2\n", encoding="utf-8")
        return None

    return _respond


def _project(tmp_path: Path) -> ProjectStore:
    store = ProjectStore(tmp_path)
    store.init_project(title="My Run", username="bob")
    return store


def _orchestrator(
    store: ProjectStore, cli: _FakeCli, clock: _FakeClock, **settings: Any
) -> RunOrchestrator:
    return RunOrchestrator(
        store,
        cli,
        settings=Settings(site_url="https://service.example", **settings),
        sleep=clock.sleep,
        clock=clock,
    )


def test_poll_completes_after_outputs_appear(tmp_path: Path) -> None:
    store = _project(tmp_path)
    clock = _FakeClock()
    cli = _FakeCli(_outputs_after(3))
    orchestrator = _orchestrator(store, cli, clock)

    result = orchestrator.poll_for_outputs(
        "bob/my-run", tmp_path / "out", interval_seconds=10, timeout_seconds=600
    )

    assert result.state is RunState.COMPLETE
    assert result.attempts == 4
    assert clock.sleeps == [10.0, 10.0, 10.0]
    assert (tmp_path / "out" / "submission.csv").exists()
    assert orchestrator.state is RunState.COMPLETE
    assert all(call[0][:3] == ("kernels", "output", "bob/my-run") for call in cli.calls)


def test_poll_times_out_without_raising(tmp_path: Path) -> None:
    store = _project(tmp_path)
    clock = _FakeClock()
    cli = _FakeCli(_outputs_after(10_000))
    orchestrator = _orchestrator(store, cli, clock)

    result = orchestrator.poll_for_outputs(
        "bob/my-run", tmp_path / "out", interval_seconds=1, timeout_seconds=2
    )

    assert result.state is RunState.TIMED_OUT
    assert result.attempts == 2
    assert orchestrator.state is RunState.TIMED_OUT


def test_poll_ignores_stale_outputs_when_fetch_fails(tmp_path: Path) -> None:
    store = _project(tmp_path)
    clock = _FakeClock()
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / "old.csv").write_text("id\n1\n", encoding="utf-8")
    orchestrator = _orchestrator(store, _FakeCli(_outputs_after(10_000)), clock)

    result = orchestrator.poll_for_outputs(
        "bob/my-run", out_dir, interval_seconds=1, timeout_seconds=5
    )

    assert result.state is RunState.TIMED_OUT
    assert result.attempts == 5
    assert orchestrator.state is RunState.TIMED_OUT


def test_poll_interval_never_drops_below_one_second(tmp_path: Path) -> None:
    store = _project(tmp_path)
    clock = _FakeClock()
    orchestrator = _orchestrator(store, _FakeCli(_outputs_after(2)), clock)

    result = orchestrator.poll_for_outputs(
        "bob/my-run", tmp_path / "out", interval_seconds=0, timeout_seconds=60
    )

    assert result.state is RunState.COMPLETE
    assert clock.sleeps == [1.0, 1.0]


def test_poll_propagates_missing_credentials(tmp_path: Path) -> None:
    store = _project(tmp_path)

    def _respond(args: tuple[str, ...], cwd: Path | None) -> None:
        raise NoCredentials("No Kaggle token found.")

    orchestrator = _orchestrator(store, _FakeCli(_respond), _FakeClock())

    with pytest.raises(NoCredentials):
        orchestrator.poll_for_outputs(
            "bob/my-run", tmp_path / "out", interval_seconds=1, timeout_seconds=5
        )


def test_submit_syncs_metadata_before_push_and_records_run(tmp_path: Path) -> None:
    store = _project(tmp_path)
    seen_metadata: list[dict[str, Any]] = []
    respond = _outputs_after(0)

    def _respond(args: tuple[str, ...], cwd: Path | None) -> CliResult | None:
        if args[:2] == ("kernels", "push"):
            seen_metadata.append(
                json.loads(store.metadata_path.read_text(encoding="utf-8"))
            )
            assert cwd == store.root
        return respond(args, cwd)

    observed: list[RunRecord] = []
    orchestrator = _orchestrator(store, _FakeCli(_respond), _FakeClock())
    orchestrator.add_observer(observed.append)

    outcome = orchestrator.submit()

    assert outcome.state is RunState.SUBMITTED
    assert outcome.url == "https://service.example/code/bob/my-run"
    assert seen_metadata and seen_metadata[0]["id"] == "bob/my-run"
    records = RunLog(tmp_path).records()
    assert len(records) == 1
    assert records[0].url == "https://service.example/code/bob/my-run"
    assert observed == records
    assert outcome.record == records[0]
    assert outcome.poll is None


def test_submit_without_url_records_nothing(tmp_path: Path) -> None:
    store = _project(tmp_path)
    cli = _FakeCli(_outputs_after(0, push_output="Kernel pushed.\n"))
    orchestrator = _orchestrator(store, cli, _FakeClock())

    outcome = orchestrator.submit()

    assert outcome.state is RunState.SUBMITTED
    assert outcome.url is None
    assert RunLog(tmp_path).records() == []


def test_submit_reads_url_when_stdout_lacks_trailing_newline(tmp_path: Path) -> None:
    store = _project(tmp_path)

    def _respond(args: tuple[str, ...], cwd: Path | None) -> CliResult:
        return CliResult(
            "Please check progress at https://service.example/code/bob/my-run",
            "Warning: Looks like you're using an outdated API Version",
            args,
        )

    outcome = _orchestrator(store, _FakeCli(_respond), _FakeClock()).submit()

    assert outcome.url == "https://service.example/code/bob/my-run"
    assert CliResult("out", "err").output == "out\nerr"
    assert CliResult("", "err").output == "err"


def test_submit_failure_propagates_and_records_nothing(tmp_path: Path) -> None:
    store = _project(tmp_path)

    def _respond(args: tuple[str, ...], cwd: Path | None) -> None:
        raise CliError("400 Bad Request", args=args, exit_code=1)

    orchestrator = _orchestrator(store, _FakeCli(_respond), _FakeClock())

    with pytest.raises(CliError, match="400"):
        orchestrator.submit()
    assert orchestrator.state is RunState.SUBMIT_FAILED
    assert RunLog(tmp_path).records() == []


def test_submit_with_auto_download_polls_outputs(tmp_path: Path) -> None:
    store = _project(tmp_path)
    clock = _FakeClock()
    cli = _FakeCli(_outputs_after(1))
    orchestrator = _orchestrator(store, cli, clock, poll_interval_seconds=5)

    outcome = orchestrator.submit(auto_download=True)

    assert outcome.state is RunState.COMPLETE
    assert outcome.poll is not None and outcome.poll.attempts == 2
    assert outcome.poll.output_dir == tmp_path / ".kaggle-outputs"
    assert [call[0][:2] for call in cli.calls] == [
        ("kernels", "push"),
        ("kernels", "output"),
        ("kernels", "output"),
    ]


def test_run_file_switches_code_file(tmp_path: Path) -> None:
    store = _project(tmp_path)
    notebook = tmp_path / "experiments" / "analysis.ipynb"
    notebook.parent.mkdir()
    notebook.write_text("{}", encoding="utf-8")
    orchestrator = _orchestrator(store, _FakeCli(_outputs_after(0)), _FakeClock())

    outcome = orchestrator.run_file(notebook, auto_download=False)

    assert outcome.metadata.code_file == "experiments/analysis.ipynb"
    assert store.load().entry_file == "experiments/analysis.ipynb"
    assert store.read_metadata()["code_file"] == "experiments/analysis.ipynb"


def test_run_file_rejects_non_notebooks_and_missing_files(tmp_path: Path) -> None:
    store = _project(tmp_path)
    (tmp_path / "main.py").write_text("print(1)\n", encoding="utf-8")
    cli = _FakeCli(_outputs_after(0))
    orchestrator = _orchestrator(store, cli, _FakeClock())

    with pytest.raises(ConfigError, match="notebook"):
        orchestrator.run_file("main.py")
    with pytest.raises(ConfigError, match="not found"):
        orchestrator.run_file("missing.ipynb")
    assert cli.calls == []


def test_download_outputs_uses_linked_kernel(tmp_path: Path) -> None:
    store = _project(tmp_path)
    cli = _FakeCli(_outputs_after(0))
    orchestrator = _orchestrator(store, cli, _FakeClock())

    dest = orchestrator.download_outputs()

    assert dest == tmp_path / ".kaggle-outputs"
    assert cli.calls[0][0] == ("kernels", "output", "bob/my-run", "-p", str(dest))


def test_extract_run_url_is_scoped_to_site_host() -> None:
    text = "see https://other.example/code/x and https://www.kaggle.com/code/bob/run-1 now"

    assert extract_run_url(text, "https://www.kaggle.com") == (
        "https://www.kaggle.com/code/bob/run-1"
    )
    assert extract_run_url("nothing here", "https://www.kaggle.com") is None
