from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path

import pytest

from kagglerun.credentials import CredentialResolver, SecretStore
from kagglerun.kaggle_cli import (
    KaggleCli,
    build_command_line,
    check_cli,
    escape_shell_arg,
    install_instructions,
)
from kagglerun.models import CliError, CliUnavailable, NoCredentials

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses a POSIX shebang script")

_AWKWARD_ARGS = [
    "plain",
    "",
    "two words",
    "it's",
    'say "hi"',
    "$HOME `id` $(id)",
    "semi;colon && pipe | glob *",
    "back\\slash",
]

_FAKE_KAGGLE = """\
import json
import os
import sys

args = sys.argv[1:]
if args == ["--version"]:
    print("Kaggle API 1.6.17")
    sys.exit(0)
if args and args[0] == "fail":
    sys.stderr.write("403 - Forbidden\\n")
    sys.exit(3)
print(json.dumps({
    "args": args,
    "username": os.environ.get("KAGGLE_USERNAME"),
    "key": os.environ.get("KAGGLE_KEY"),
    "cwd": os.getcwd(),
}))
"""


class _ListSink:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self.chunks: list[str] = []

    def line(self, text: str) -> None:
        self.lines.append(text)

    def write(self, text: str) -> None:
        self.chunks.append(text)


def _split_windows_word(text: str) -> str:
    assert text.startswith('"') and text.endswith('"')
    out: list[str] = []
    body = text[1:-1]
    idx = 0
    while idx < len(body):
        if body[idx] == '"':
            assert body[idx + 1] == '"'
            idx += 1
        out.append(body[idx])
        idx += 1
    return "".join(out)


def _fake_kaggle(tmp_path: Path) -> str:
    script = tmp_path / "bin" / "fake-kaggle"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(f"#!{sys.executable}\n{_FAKE_KAGGLE}", encoding="utf-8")
    script.chmod(0o755)
    return shlex.quote(str(script))


def _resolver(tmp_path: Path, environ: dict[str, str]) -> CredentialResolver:
    return CredentialResolver(SecretStore(tmp_path / "credentials.json"), environ=environ)


@pytest.mark.parametrize("arg", _AWKWARD_ARGS)
def test_posix_escape_round_trips_through_shell_tokenizer(arg: str) -> None:
    assert shlex.split(escape_shell_arg(arg, windows=False)) == [arg]


@pytest.mark.parametrize("arg", _AWKWARD_ARGS)
def test_windows_escape_round_trips_doubled_quotes(arg: str) -> None:
    assert _split_windows_word(escape_shell_arg(arg, windows=True)) == arg


def test_build_command_line_keeps_cli_path_verbatim() -> None:
    line = build_command_line("python -m kaggle", ["kernels", "push"], windows=False)
    assert line == "python -m kaggle 'kernels' 'push'"


def test_install_instructions_mention_homebrew_on_macos_only() -> None:
    assert "brew install kaggle" in install_instructions("darwin")
    assert "brew install kaggle" not in install_instructions("linux")
    assert "pip install kaggle" in install_instructions("linux")


@posix_only
def test_check_cli_reports_version_and_missing_binary(tmp_path: Path) -> None:
    status = check_cli(_fake_kaggle(tmp_path))
    assert status.available is True
    assert status.version == "Kaggle API 1.6.17"

    missing = check_cli(str(tmp_path / "no-such-kaggle"))
    assert missing.available is False
    assert missing.error is not None and "not found" in missing.error
    assert "pip install kaggle" in missing.error


@posix_only
def test_invoke_injects_credentials_and_preserves_arguments(tmp_path: Path) -> None:
    sink = _ListSink()
    cli = KaggleCli(
        _resolver(tmp_path, {"KAGGLE_USERNAME": "alice", "KAGGLE_KEY": "s3cret"}),
        cli_path=_fake_kaggle(tmp_path),
        sink=sink,
    )
    work = tmp_path / "work"
    work.mkdir()
    args = ["kernels", "list", "-s", "it's a \"test\" $HOME"]

    result = cli.invoke(args, cwd=work)

    payload = json.loads(result.stdout)
    assert payload["args"] == args
    assert payload["username"] == "alice"
    assert payload["key"] == "s3cret"
    assert Path(payload["cwd"]).resolve() == work.resolve()
    assert result.args == tuple(args)
    assert sink.lines and sink.lines[0].endswith("kernels list -s it's a \"test\" $HOME")
    assert any("alice" in chunk for chunk in sink.chunks)


@posix_only
def test_invoke_nonzero_exit_raises_cli_error(tmp_path: Path) -> None:
    cli = KaggleCli(
        _resolver(tmp_path, {"KAGGLE_USERNAME": "alice", "KAGGLE_KEY": "k"}),
        cli_path=_fake_kaggle(tmp_path),
    )

    with pytest.raises(CliError) as excinfo:
        cli.invoke(["fail", "now"])

    assert excinfo.value.exit_code == 3
    assert "403" in excinfo.value.stderr
    assert "403" in str(excinfo.value)
    assert excinfo.value.cli_args == ("fail", "now")


@posix_only
def test_invoke_without_credentials_raises_before_running(tmp_path: Path) -> None:
    sink = _ListSink()
    cli = KaggleCli(_resolver(tmp_path, {}), cli_path=_fake_kaggle(tmp_path), sink=sink)

    with pytest.raises(NoCredentials):
        cli.invoke(["kernels", "list"])
    assert sink.lines == []


def test_invoke_missing_binary_raises_unavailable(tmp_path: Path) -> None:
    cli = KaggleCli(
        _resolver(tmp_path, {"KAGGLE_USERNAME": "alice", "KAGGLE_KEY": "k"}),
        cli_path=str(tmp_path / "no-such-kaggle"),
    )

    with pytest.raises(CliUnavailable, match="not found"):
        cli.invoke(["kernels", "list"])
