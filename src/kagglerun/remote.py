"""Kernel, dataset and competition actions that map onto single CLI calls."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from kagglerun._logging import get_logger
from kagglerun.csvparse import CsvTable, parse_csv
from kagglerun.kaggle_cli import CliInvoker
from kagglerun.listings import competition_ref_from_url, parse_remote_files
from kagglerun.models import (
    ConfigError,
    JobMetadata,
    KaggleRunError,
    ProjectConfig,
    RemoteFile,
)
from kagglerun.project import NOTEBOOK_SUFFIX, ProjectStore, metadata_to_project
from kagglerun.utils import read_json_mapping, ref_to_dirname

REMOTE_NOTEBOOKS_DIR = "remote_notebooks"
DATASETS_DIR = ".kaggle-datasets"
COMPETITIONS_DIR = "competitions"
DEFAULT_SUBMISSION_MESSAGE = "Submission from kagglerun"

_log = get_logger("remote")


@dataclass(frozen=True)
class PulledKernel:
    ref: str
    directory: Path
    code_path: Path | None


def _require_ref(ref: str, *, what: str) -> str:
    text = ref.strip()
    if not text:
        raise ConfigError(f"A {what} reference is required.")
    return text


def normalize_competition_ref(value: str) -> str:
    """Accept a slug or a full competition URL."""
    return competition_ref_from_url(_require_ref(value, what="competition"))


def pull_kernel_locally(cli: CliInvoker, root: Path, ref: str) -> PulledKernel:
    """Pull *ref* into ``remote_notebooks/<owner__name>`` and locate its code file."""
    ref = _require_ref(ref, what="kernel")
    dest = root / REMOTE_NOTEBOOKS_DIR / ref_to_dirname(ref)
    dest.mkdir(parents=True, exist_ok=True)
    cli.invoke(["kernels", "pull", "-p", str(dest), ref], cwd=root)

    code_path: Path | None = None
    meta = read_json_mapping(dest / "kernel-metadata.json") or {}
    code_file = str(meta.get("code_file") or "")
    if code_file:
        code_path = dest / code_file
    else:
        notebooks = sorted(
            child for child in dest.iterdir() if child.name.lower().endswith(NOTEBOOK_SUFFIX)
        )
        code_path = notebooks[0] if notebooks else None
    return PulledKernel(ref=ref, directory=dest, code_path=code_path)


def pull_kernel(cli: CliInvoker, root: Path, ref: str) -> None:
    cli.invoke(["kernels", "pull", _require_ref(ref, what="kernel")], cwd=root)


def link_kernel(cli: CliInvoker, store: ProjectStore, slug: str) -> ProjectConfig:
    """Download remote metadata for *slug* and relink the project to it."""
    slug = _require_ref(slug, what="kernel")
    cli.invoke(["kernels", "pull", "-m", slug], cwd=store.root)
    if store.is_initialized():
        return store.relink(slug)
    pulled = store.read_metadata()
    if pulled is None:
        raise KaggleRunError(
            f"kernels pull -m {slug} did not produce {store.metadata_path.name}"
        )
    config = metadata_to_project(JobMetadata.from_json({**pulled, "id": slug}))
    store.save(config)
    _log.info("project_created_from_link slug=%s", slug)
    return config


def list_dataset_files(cli: CliInvoker, ref: str) -> list[RemoteFile]:
    result = cli.invoke(["datasets", "files", _require_ref(ref, what="dataset"), "--csv"])
    return parse_remote_files(result.stdout)


def download_dataset(
    cli: CliInvoker, root: Path, ref: str, *, file_name: str | None = None
) -> Path:
    ref = _require_ref(ref, what="dataset")
    dest = root / DATASETS_DIR / ref_to_dirname(ref)
    dest.mkdir(parents=True, exist_ok=True)
    args = ["datasets", "download", ref]
    if file_name:
        args.extend(["-f", file_name])
    args.extend(["-p", str(dest), "--unzip"])
    cli.invoke(args, cwd=root)
    return dest / file_name if file_name else dest


def list_competition_files(cli: CliInvoker, ref: str) -> list[RemoteFile]:
    result = cli.invoke(["competitions", "files", normalize_competition_ref(ref), "--csv"])
    return parse_remote_files(result.stdout)


def download_competition(
    cli: CliInvoker, root: Path, ref: str, *, file_name: str | None = None
) -> Path:
    ref = normalize_competition_ref(ref)
    dest = root / COMPETITIONS_DIR / ref_to_dirname(ref)
    dest.mkdir(parents=True, exist_ok=True)
    args = ["competitions", "download", ref]
    if file_name:
        args.extend(["-f", file_name])
    args.extend(["-p", str(dest)])
    cli.invoke(args, cwd=root)
    return dest / file_name if file_name else dest


def submit_competition(
    cli: CliInvoker,
    root: Path,
    ref: str,
    submission: str | Path,
    *,
    message: str = DEFAULT_SUBMISSION_MESSAGE,
) -> None:
    ref = normalize_competition_ref(ref)
    path = Path(submission).expanduser().resolve()
    if not path.is_file():
        raise ConfigError(f"Submission file not found: {path}")
    args = ["competitions", "submit", ref, "-f", str(path)]
    args.extend(["-m", message or DEFAULT_SUBMISSION_MESSAGE])
    cli.invoke(args, cwd=root)
    _log.info("competition_submitted ref=%s file=%s", ref, path)


def competition_submissions(cli: CliInvoker, root: Path, ref: str) -> CsvTable:
    result = cli.invoke(
        ["competitions", "submissions", normalize_competition_ref(ref), "--csv"], cwd=root
    )
    return parse_csv(result.stdout)


def competition_leaderboard(cli: CliInvoker, root: Path, ref: str) -> CsvTable:
    result = cli.invoke(
        ["competitions", "leaderboard", normalize_competition_ref(ref), "-s", "--csv"],
        cwd=root,
    )
    return parse_csv(result.stdout)


def competition_error_hint(
    exc: BaseException, ref: str, action: str, *, site_url: str = "https://www.kaggle.com"
) -> str:
    message = str(exc)
    if "403" in message or "Forbidden" in message:
        return (
            f'Access denied for competition "{ref}". You may need to join the '
            f"competition first: {site_url}/competitions/{ref}"
        )
    if "401" in message or "Unauthorized" in message:
        return (
            f'Authentication error for competition "{ref}". Your API token may be '
            f"invalid; create a new one at {site_url}/settings/account"
        )
    return f'Failed to {action} for competition "{ref}": {message}'
