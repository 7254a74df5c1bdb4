from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from kagglerun._logging import setup_logging
from kagglerun.credentials import CredentialResolver, SecretStore
from kagglerun.csvparse import CsvTable
from kagglerun.kaggle_cli import KaggleCli
from kagglerun.listings import (
    COMPETITION_CATEGORIES,
    COMPETITION_GROUPS,
    KERNEL_LANGUAGES,
    KERNEL_TYPES,
    CompetitionQuery,
    DatasetQuery,
    KernelQuery,
    list_competitions,
    list_datasets,
    list_kernels,
    render_item,
)
from kagglerun.models import (
    ACCELERATORS,
    DEFAULT_OUTPUT_DIR,
    CliError,
    CliUnavailable,
    ConfigError,
    KaggleRunError,
    ListItem,
    NoCredentials,
    NotInitialized,
)
from kagglerun.orchestrator import RunOrchestrator, RunOutcome
from kagglerun.project import CODE_FILE_CHOICES, ProjectStore
from kagglerun.remote import (
    DEFAULT_SUBMISSION_MESSAGE,
    competition_error_hint,
    competition_leaderboard,
    competition_submissions,
    download_competition,
    download_dataset,
    link_kernel,
    list_competition_files,
    list_dataset_files,
    normalize_competition_ref,
    pull_kernel,
    pull_kernel_locally,
    submit_competition,
)
from kagglerun.runlog import RunLog
from kagglerun.settings import Settings, load_settings
from kagglerun.sinks import ConsoleSink

_cli_log = logging.getLogger("kagglerun.cli")


@dataclass(frozen=True)
class _Session:
    settings: Settings
    store: ProjectStore
    credentials: CredentialResolver
    cli: KaggleCli
    sink: ConsoleSink

    @property
    def root(self) -> Path:
        return self.store.root

    def orchestrator(self) -> RunOrchestrator:
        return RunOrchestrator(
            self.store, self.cli, settings=self.settings, sink=self.sink
        )


def _console() -> Console:
    return Console(highlight=False)


def _session(args: argparse.Namespace) -> _Session:
    settings = load_settings(args.settings).with_overrides(cli_path=args.cli_path)
    credentials = CredentialResolver(SecretStore())
    sink = ConsoleSink()
    return _Session(
        settings=settings,
        store=ProjectStore.from_dir(args.project),
        credentials=credentials,
        cli=KaggleCli(credentials, cli_path=settings.cli_path, sink=sink),
        sink=sink,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _render_items(title: str, items: Iterable[ListItem]) -> None:
    table = Table(title=title)
    table.add_column("Name", style="bold")
    table.add_column("Details")
    table.add_column("URL", overflow="fold")
    rows = 0
    for item in items:
        view = render_item(item)
        table.add_row(view.label, view.description, view.url)
        rows += 1
    if rows == 0:
        table.add_row("-", "-", "-")
    _console().print(table)


def _render_csv_table(title: str, csv_table: CsvTable) -> None:
    table = Table(title=title)
    for name in csv_table.header or ["-"]:
        table.add_column(name)
    for row in csv_table:
        width = len(csv_table.header)
        table.add_row(*(row + [""] * (width - len(row)))[:width])
    _console().print(table)


def _render_overview(title: str, fields: dict[str, Any]) -> None:
    overview = Table(title=title, show_header=False)
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value", overflow="fold")
    for key, value in fields.items():
        overview.add_row(key, "-" if value is None else str(value))
    _console().print(overview)


def _emit(args: argparse.Namespace, title: str, payload: dict[str, Any]) -> None:
    if args.format == "json":
        _print_json(payload)
    else:
        _render_overview(title, payload)


def _emit_items(args: argparse.Namespace, title: str, items: list[Any]) -> None:
    if args.format == "json":
        _print_json([render_item(item).to_json() for item in items])
    else:
        _render_items(title, items)


def _render_outcome(outcome: RunOutcome) -> None:
    fields: dict[str, Any] = {
        "State": outcome.state.value,
        "Kernel": outcome.metadata.id,
        "Code File": outcome.metadata.code_file,
        "Run URL": outcome.url,
    }
    if outcome.poll is not None:
        fields["Poll Attempts"] = outcome.poll.attempts
        fields["Outputs"] = outcome.poll.output_dir
    _render_overview("Kaggle Run", fields)


def _interactive(args: argparse.Namespace) -> bool:
    return getattr(args, "format", "table") != "json" and sys.stdin.isatty()


def _run_init(
    session: _Session,
    *,
    title: str,
    username: str | None,
    code_file: str,
    accelerator: str | None,
    internet: bool | None,
) -> dict[str, Any]:
    owner = username or session.credentials.username()
    if not owner:
        raise ConfigError(
            "A Kaggle username is required for the kernel slug. "
            "Pass --username or sign in first."
        )
    config = session.store.init_project(
        title=title,
        username=owner,
        code_file=code_file,
        accelerator=accelerator or session.settings.default_accelerator,
        internet=session.settings.default_internet if internet is None else internet,
    )
    return {
        "root": str(session.root),
        "kernel_slug": config.job_slug,
        "code_file": config.entry_file,
        "accelerator": config.accelerator,
        "internet": config.internet_enabled,
    }


def _offer_init(args: argparse.Namespace) -> bool:
    if not _interactive(args):
        return False
    if not Confirm.ask("kaggle.yml not found. Initialize Kaggle project?", default=True):
        return False
    session = _session(args)
    title = Prompt.ask("Notebook title", default="My Awesome Kernel")
    username = Prompt.ask(
        "Your Kaggle username (for kernel slug)",
        default=session.credentials.username() or None,
    )
    code_file = Prompt.ask(
        "Primary code file", choices=list(CODE_FILE_CHOICES), default=CODE_FILE_CHOICES[0]
    )
    payload = _run_init(
        session,
        title=title,
        username=username,
        code_file=code_file,
        accelerator=None,
        internet=None,
    )
    _console().print(f"Kaggle project initialized: {payload['kernel_slug']}")
    return True


def _cmd_auth_sign_in(args: argparse.Namespace) -> int:
    session = _session(args)
    if args.token_file:
        creds = session.credentials.store_token_file(args.token_file)
        source = "file"
    else:
        creds = session.credentials.sign_in_from_env()
        source = "environment"
        if creds is None:
            if not sys.stdin.isatty():
                raise ConfigError(
                    "No valid KAGGLE_TOKEN_JSON in the environment; pass --token-file "
                    "or run interactively."
                )
            username = Prompt.ask("Kaggle Username")
            key = Prompt.ask("Kaggle API Key", password=True)
            creds = session.credentials.sign_in(username, key)
            source = "prompt"
    _emit(
        args,
        "Signed In",
        {
            "username": creds.username,
            "source": source,
            "secret_store": str(session.credentials.secrets.path),
        },
    )
    return 0


def _cmd_auth_sign_out(args: argparse.Namespace) -> int:
    session = _session(args)
    removed = session.credentials.sign_out()
    _emit(args, "Signed Out", {"removed": removed})
    return 0


def _cmd_auth_status(args: argparse.Namespace) -> int:
    session = _session(args)
    _emit(
        args,
        "Authentication",
        {
            "signed_in": session.credentials.is_signed_in(),
            "username": session.credentials.username(),
        },
    )
    return 0


def _cmd_cli_status(args: argparse.Namespace) -> int:
    session = _session(args)
    status = session.cli.check()
    _emit(args, "Kaggle CLI", {**status.to_json(), **session.settings.to_json()})
    return 0 if status.available else 4


def _cmd_init(args: argparse.Namespace) -> int:
    session = _session(args)
    payload = _run_init(
        session,
        title=args.title,
        username=args.username,
        code_file=args.code_file,
        accelerator=args.accelerator,
        internet=args.internet,
    )
    _emit(args, "Project Initialized", payload)
    return 0


def _cmd_link(args: argparse.Namespace) -> int:
    session = _session(args)
    config = link_kernel(session.cli, session.store, args.slug)
    _emit(args, "Linked", {"kernel_slug": config.job_slug, "code_file": config.entry_file})
    return 0


def _cmd_push(args: argparse.Namespace) -> int:
    session = _session(args)
    outcome = session.orchestrator().submit(auto_download=bool(args.wait))
    if args.format == "json":
        _print_json(outcome.to_json())
    else:
        _render_outcome(outcome)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    session = _session(args)
    outcome = session.orchestrator().run_file(args.notebook, auto_download=args.wait)
    if args.format == "json":
        _print_json(outcome.to_json())
    else:
        _render_outcome(outcome)
    return 0


def _cmd_outputs(args: argparse.Namespace) -> int:
    session = _session(args)
    dest = session.orchestrator().download_outputs()
    _emit(args, "Outputs", {"output_dir": str(dest)})
    return 0


def _cmd_attach(args: argparse.Namespace) -> int:
    session = _session(args)
    if args.kind == "dataset":
        config = session.store.attach_dataset(args.ref)
        attached = list(config.attached_datasets)
    else:
        config = session.store.attach_competition(normalize_competition_ref(args.ref))
        attached = list(config.attached_competitions)
    _emit(args, f"Attached {args.kind}", {"ref": args.ref, "attached": ", ".join(attached)})
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    session = _session(args)
    output_dir = session.root / DEFAULT_OUTPUT_DIR
    if session.store.is_initialized():
        output_dir = session.store.output_dir()
    items = RunLog(session.root).items(output_dir, limit=args.limit)
    _emit_items(args, "Runs", items)
    return 0


def _cmd_kernels_list(args: argparse.Namespace) -> int:
    session = _session(args)
    mine = not (args.search or args.language != "all" or args.kernel_type != "all" or args.public)
    query = KernelQuery(
        mine=mine, search=args.search or "", language=args.language, kernel_type=args.kernel_type
    )
    items = list_kernels(session.cli, query, site_url=session.settings.site_url)
    _emit_items(args, "My Notebooks" if mine else "Notebooks", items)
    return 0


def _cmd_kernels_pull(args: argparse.Namespace) -> int:
    session = _session(args)
    if args.local:
        pulled = pull_kernel_locally(session.cli, session.root, args.ref)
        _emit(
            args,
            "Pulled Notebook",
            {
                "ref": pulled.ref,
                "directory": str(pulled.directory),
                "code_file": str(pulled.code_path) if pulled.code_path else None,
            },
        )
        return 0
    pull_kernel(session.cli, session.root, args.ref)
    _emit(args, "Pulled Notebook", {"ref": args.ref, "directory": str(session.root)})
    return 0


def _cmd_datasets_list(args: argparse.Namespace) -> int:
    session = _session(args)
    query = DatasetQuery(mine=not (args.search or args.popular), search=args.search or "")
    items, notice = list_datasets(session.cli, query, site_url=session.settings.site_url)
    if notice and args.format != "json":
        _console().print(notice)
    _emit_items(args, "Datasets", items)
    return 0


def _cmd_datasets_files(args: argparse.Namespace) -> int:
    session = _session(args)
    _emit_items(args, f"Files in {args.ref}", list_dataset_files(session.cli, args.ref))
    return 0


def _cmd_datasets_download(args: argparse.Namespace) -> int:
    session = _session(args)
    dest = download_dataset(session.cli, session.root, args.ref, file_name=args.file)
    _emit(args, "Dataset Downloaded", {"ref": args.ref, "path": str(dest)})
    return 0


def _cmd_competitions_list(args: argparse.Namespace) -> int:
    session = _session(args)
    query = CompetitionQuery(search=args.search or "", category=args.category, group=args.group)
    items = list_competitions(session.cli, query, site_url=session.settings.site_url)
    _emit_items(args, "Competitions", items)
    return 0


def _with_hint(exc: CliError, ref: str, action: str, site_url: str) -> CliError:
    return CliError(
        competition_error_hint(exc, ref, action, site_url=site_url),
        args=exc.cli_args,
        exit_code=exc.exit_code,
        stdout=exc.stdout,
        stderr=exc.stderr,
    )


def _cmd_competitions_files(args: argparse.Namespace) -> int:
    session = _session(args)
    ref = normalize_competition_ref(args.ref)
    try:
        files = list_competition_files(session.cli, ref)
    except CliError as exc:
        raise _with_hint(exc, ref, "browse files", session.settings.site_url) from exc
    _emit_items(args, f"Files in {ref}", files)
    return 0


def _cmd_competitions_download(args: argparse.Namespace) -> int:
    session = _session(args)
    ref = normalize_competition_ref(args.ref)
    try:
        dest = download_competition(session.cli, session.root, ref, file_name=args.file)
    except CliError as exc:
        raise _with_hint(exc, ref, "download data", session.settings.site_url) from exc
    _emit(args, "Competition Data", {"ref": ref, "path": str(dest)})
    return 0


def _cmd_competitions_submit(args: argparse.Namespace) -> int:
    session = _session(args)
    ref = normalize_competition_ref(args.ref)
    try:
        submit_competition(session.cli, session.root, ref, args.file, message=args.message)
    except CliError as exc:
        raise _with_hint(exc, ref, "submit", session.settings.site_url) from exc
    _emit(
        args,
        "Submission Uploaded",
        {"ref": ref, "file": args.file, "message": args.message},
    )
    return 0


def _emit_csv(args: argparse.Namespace, title: str, table: CsvTable) -> None:
    if args.format == "json":
        _print_json([dict(zip(table.header, row)) for row in table])
    else:
        _render_csv_table(title, table)


def _cmd_competitions_submissions(args: argparse.Namespace) -> int:
    session = _session(args)
    ref = normalize_competition_ref(args.ref)
    try:
        table = competition_submissions(session.cli, session.root, ref)
    except CliError as exc:
        raise _with_hint(exc, ref, "view submissions", session.settings.site_url) from exc
    _emit_csv(args, f"Submissions for {ref}", table)
    return 0


def _cmd_competitions_leaderboard(args: argparse.Namespace) -> int:
    session = _session(args)
    ref = normalize_competition_ref(args.ref)
    try:
        table = competition_leaderboard(session.cli, session.root, ref)
    except CliError as exc:
        raise _with_hint(exc, ref, "view leaderboard", session.settings.site_url) from exc
    _emit_csv(args, f"Leaderboard for {ref}", table)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kagglerun", description="Run notebooks and manage data on Kaggle"
    )
    parser.add_argument(
        "--project", default=".", help="Project root holding kaggle.yml (default: .)"
    )
    parser.add_argument(
        "--settings",
        default=None,
        help="Settings YAML path (default: ~/.kagglerun/settings.yaml)",
    )
    parser.add_argument("--cli-path", default=None, help="Kaggle CLI command")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Increase log verbosity"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_format(target: argparse.ArgumentParser) -> None:
        target.add_argument("--format", choices=["table", "json"], default="table")

    def _add_parser(
        group: argparse._SubParsersAction, name: str, handler: Any, help_text: str
    ) -> argparse.ArgumentParser:
        command = group.add_parser(name, help=help_text)
        command.set_defaults(handler=handler)
        _add_format(command)
        return command

    auth = sub.add_parser("auth", help="Manage the stored Kaggle API token")
    auth_sub = auth.add_subparsers(dest="auth_command", required=True)
    sign_in = _add_parser(auth_sub, "sign-in", _cmd_auth_sign_in, "Store an API token")
    sign_in.add_argument("--token-file", default=None, help="Path to kaggle.json")
    _add_parser(auth_sub, "sign-out", _cmd_auth_sign_out, "Delete the stored token")
    _add_parser(auth_sub, "status", _cmd_auth_status, "Show sign-in state")

    _add_parser(sub, "cli-status", _cmd_cli_status, "Check the Kaggle CLI binary")

    init = _add_parser(sub, "init", _cmd_init, "Scaffold kaggle.yml and kernel metadata")
    init.add_argument("--title", required=True, help="Notebook title")
    init.add_argument("--username", default=None, help="Kernel owner (default: signed-in user)")
    init.add_argument("--code-file", choices=list(CODE_FILE_CHOICES), default=CODE_FILE_CHOICES[0])
    init.add_argument("--accelerator", choices=list(ACCELERATORS), default=None)
    init.add_argument("--internet", action=argparse.BooleanOptionalAction, default=None)

    link = _add_parser(sub, "link", _cmd_link, "Relink the project to an existing kernel")
    link.add_argument("slug", help="Kernel slug, e.g. username/notebook-name")

    push = _add_parser(sub, "push", _cmd_push, "Sync metadata and push the project")
    push.add_argument(
        "--wait", action="store_true", help="Poll until outputs are downloaded"
    )

    run = _add_parser(sub, "run", _cmd_run, "Run a notebook on Kaggle")
    run.add_argument("notebook", help="Notebook (.ipynb) inside the project")
    run.add_argument(
        "--wait",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Poll for outputs (default: auto_download_on_complete setting)",
    )

    _add_parser(sub, "outputs", _cmd_outputs, "Download the latest kernel outputs")

    attach = _add_parser(sub, "attach", _cmd_attach, "Attach a data source to kaggle.yml")
    attach.add_argument("kind", choices=["dataset", "competition"])
    attach.add_argument("ref")

    runs = _add_parser(sub, "runs", _cmd_runs, "Show recent runs")
    runs.add_argument("--limit", type=int, default=50)

    kernels = sub.add_parser("kernels", help="Browse notebooks")
    kernels_sub = kernels.add_subparsers(dest="kernels_command", required=True)
    kernels_list = _add_parser(kernels_sub, "list", _cmd_kernels_list, "List notebooks")
    kernels_list.add_argument("--search", default=None)
    kernels_list.add_argument("--public", action="store_true", help="Popular public notebooks")
    kernels_list.add_argument("--language", choices=list(KERNEL_LANGUAGES), default="all")
    kernels_list.add_argument("--kernel-type", choices=list(KERNEL_TYPES), default="all")
    kernels_pull = _add_parser(kernels_sub, "pull", _cmd_kernels_pull, "Pull a notebook")
    kernels_pull.add_argument("ref")
    kernels_pull.add_argument(
        "--local",
        action="store_true",
        help="Pull into remote_notebooks/<owner__name> and locate the code file",
    )

    datasets = sub.add_parser("datasets", help="Browse and download datasets")
    datasets_sub = datasets.add_subparsers(dest="datasets_command", required=True)
    datasets_list = _add_parser(datasets_sub, "list", _cmd_datasets_list, "List datasets")
    datasets_list.add_argument("--search", default=None)
    datasets_list.add_argument("--popular", action="store_true")
    datasets_files = _add_parser(datasets_sub, "files", _cmd_datasets_files, "List dataset files")
    datasets_files.add_argument("ref")
    datasets_download = _add_parser(
        datasets_sub, "download", _cmd_datasets_download, "Download a dataset"
    )
    datasets_download.add_argument("ref")
    datasets_download.add_argument("--file", default=None, help="Single file to download")

    competitions = sub.add_parser("competitions", help="Competitions and submissions")
    comp_sub = competitions.add_subparsers(dest="competitions_command", required=True)
    comp_list = _add_parser(comp_sub, "list", _cmd_competitions_list, "List competitions")
    comp_list.add_argument("--search", default=None)
    comp_list.add_argument("--category", choices=list(COMPETITION_CATEGORIES), default="featured")
    comp_list.add_argument("--group", choices=list(COMPETITION_GROUPS), default="general")
    comp_files = _add_parser(comp_sub, "files", _cmd_competitions_files, "List data files")
    comp_files.add_argument("ref")
    comp_download = _add_parser(
        comp_sub, "download", _cmd_competitions_download, "Download competition data"
    )
    comp_download.add_argument("ref")
    comp_download.add_argument("--file", default=None, help="Single file to download")
    comp_submit = _add_parser(comp_sub, "submit", _cmd_competitions_submit, "Upload a submission")
    comp_submit.add_argument("ref")
    comp_submit.add_argument("file")
    comp_submit.add_argument("-m", "--message", default=DEFAULT_SUBMISSION_MESSAGE)
    comp_submissions = _add_parser(
        comp_sub, "submissions", _cmd_competitions_submissions, "Show your submissions"
    )
    comp_submissions.add_argument("ref")
    comp_leaderboard = _add_parser(
        comp_sub, "leaderboard", _cmd_competitions_leaderboard, "Show the leaderboard"
    )
    comp_leaderboard.add_argument("ref")

    return parser


def _dispatch(args: argparse.Namespace) -> int:
    try:
        return int(args.handler(args))
    except NotInitialized:
        if not _offer_init(args):
            raise
    return int(args.handler(args))


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    setup_logging(verbosity=args.verbose)
    command = " ".join(
        str(part)
        for part in (
            args.command,
            getattr(args, "auth_command", None)
            or getattr(args, "kernels_command", None)
            or getattr(args, "datasets_command", None)
            or getattr(args, "competitions_command", None),
        )
        if part
    )
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        exit_code = _dispatch(args)
    except NotInitialized as exc:
        _cli_log.error("cli_command_error command=%s kind=not_initialized", command)
        print(f"[not initialized] {exc}", file=sys.stderr)
        exit_code = 2
    except ConfigError as exc:
        _cli_log.error("cli_command_error command=%s kind=config error=%s", command, exc)
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except NoCredentials as exc:
        _cli_log.error("cli_command_error command=%s kind=no_credentials", command)
        print(f"[auth error] {exc}", file=sys.stderr)
        exit_code = 3
    except CliUnavailable as exc:
        _cli_log.error("cli_command_error command=%s kind=cli_unavailable", command)
        print(f"[cli unavailable] {exc}", file=sys.stderr)
        exit_code = 4
    except CliError as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=cli exit=%s", command, exc.exit_code
        )
        print(f"[cli error] {exc}", file=sys.stderr)
        exit_code = 1
    except KaggleRunError as exc:
        _cli_log.error("cli_command_error command=%s kind=runtime error=%s", command, exc)
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except (OSError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        duration_sec = time.perf_counter() - started
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            duration_sec,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
