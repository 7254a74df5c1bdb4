from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Protocol, Sequence

from kagglerun._logging import get_logger
from kagglerun.credentials import KEY_ENV, USERNAME_ENV, CredentialResolver
from kagglerun.models import CliError, CliResult, CliStatus, CliUnavailable
from kagglerun.sinks import NullSink, OutputSink

INSTALL_DOCS_URL = "https://github.com/Kaggle/kaggle-api#installation"
_NOT_FOUND_EXIT_CODES = {127, 9009}
_NOT_FOUND_MARKERS = ("command not found", "not found", "not recognized", "no such file")

_log = get_logger("kaggle_cli")


class CliInvoker(Protocol):
    def invoke(
        self, args: Sequence[str], cwd: str | Path | None = None
    ) -> CliResult: ...


def _is_windows() -> bool:
    return os.name == "nt"


def escape_shell_arg(arg: str, *, windows: bool | None = None) -> str:
    """Quote *arg* as a single word for the platform shell."""
    use_windows = _is_windows() if windows is None else windows
    if use_windows:
        return '"' + arg.replace('"', '""') + '"'
    return "'" + arg.replace("'", "'\\''") + "'"


def build_command_line(
    cli_path: str, args: Sequence[str], *, windows: bool | None = None
) -> str:
    # cli_path is used verbatim so settings may hold e.g. "python -m kaggle".
    escaped = [escape_shell_arg(str(arg), windows=windows) for arg in args]
    return " ".join([cli_path, *escaped])


def install_instructions(platform: str | None = None) -> str:
    name = sys.platform if platform is None else platform
    lines = [
        "Install Kaggle CLI:",
        "  - Using pip: pip install kaggle",
        "  - Using conda: conda install -c conda-forge kaggle",
    ]
    if name == "darwin":
        lines.append("  - Using Homebrew: brew install kaggle")
    else:
        lines.append("  - Make sure Python and pip are installed first")
    lines.append(f"See {INSTALL_DOCS_URL}")
    return "\n".join(lines)


def check_cli(cli_path: str = "kaggle") -> CliStatus:
    """Probe ``<cli_path> --version`` without raising."""
    try:
        completed = subprocess.run(
            f"{cli_path} --version",
            shell=True,
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        return CliStatus(
            available=False,
            error=f"Kaggle CLI not found at '{cli_path}'.\n\n{install_instructions()}"
            if isinstance(exc, FileNotFoundError)
            else f"Error checking Kaggle CLI: {exc}",
        )

    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout or "").strip()
        lowered = detail.lower()
        if completed.returncode in _NOT_FOUND_EXIT_CODES or any(
            marker in lowered for marker in _NOT_FOUND_MARKERS
        ):
            return CliStatus(
                available=False,
                error=f"Kaggle CLI not found at '{cli_path}'.\n\n{install_instructions()}",
            )
        return CliStatus(
            available=False,
            error=(
                f"Error checking Kaggle CLI (exit {completed.returncode}): "
                f"{detail or 'no output'}"
            ),
        )

    version = completed.stdout.strip() or completed.stderr.strip()
    return CliStatus(available=True, version=version or None)


class KaggleCli:
    """Runs Kaggle CLI subcommands with credentials injected via the environment."""

    def __init__(
        self,
        credentials: CredentialResolver,
        *,
        cli_path: str = "kaggle",
        sink: OutputSink | None = None,
    ):
        self.credentials = credentials
        self.cli_path = cli_path
        self.sink: OutputSink = sink if sink is not None else NullSink()

    def check(self) -> CliStatus:
        return check_cli(self.cli_path)

    def ensure_available(self) -> CliStatus:
        status = self.check()
        if not status.available:
            _log.warning("cli_unavailable cli_path=%s", self.cli_path)
            raise CliUnavailable(status.error or "Kaggle CLI is not available")
        return status

    def invoke(
        self, args: Sequence[str], cwd: str | Path | None = None
    ) -> CliResult:
        # Availability is re-probed on every call; the binary may come and go.
        self.ensure_available()
        creds = self.credentials.resolve()

        arg_list = tuple(str(arg) for arg in args)
        command_line = build_command_line(self.cli_path, arg_list)
        child_env = os.environ.copy()
        child_env[USERNAME_ENV] = creds.username
        child_env[KEY_ENV] = creds.key

        self.sink.line(f"$ {self.cli_path} {' '.join(arg_list)}")
        _log.info("cli_invoke args=%s cwd=%s", " ".join(arg_list), cwd or ".")
        completed = subprocess.run(
            command_line,
            shell=True,
            capture_output=True,
            text=True,
            cwd=str(cwd) if cwd is not None else None,
            env=child_env,
        )
        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        self.sink.write(stdout)
        self.sink.write(stderr)

        if completed.returncode != 0:
            _log.info(
                "cli_failed args=%s exit=%s", " ".join(arg_list), completed.returncode
            )
            detail = (stderr or stdout).strip()
            raise CliError(
                f"Command failed (exit {completed.returncode}): "
                f"{self.cli_path} {' '.join(arg_list)}"
                f"{': ' + detail if detail else ''}",
                args=arg_list,
                exit_code=completed.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return CliResult(stdout=stdout, stderr=stderr, args=arg_list)
