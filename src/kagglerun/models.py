from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

ACCELERATORS = ("none", "gpu", "tpu")
PRIVACY_LEVELS = ("private", "public")
DEFAULT_OUTPUT_DIR = ".kaggle-outputs"
KERNEL_LANGUAGE = "python"


class KaggleRunError(RuntimeError):
    """Base error for kagglerun failures."""


class ConfigError(KaggleRunError):
    """Raised when project files, settings or user input are invalid."""


class NotInitialized(ConfigError):
    """Raised when ``kaggle.yml`` is missing from the project root."""

    def __init__(self, path: Any):
        self.path = path
        super().__init__(
            f"Project descriptor not found: {path}. "
            "Run 'kagglerun init' to initialize a Kaggle project."
        )


class NoCredentials(KaggleRunError):
    """Raised when no credential source yields a username and key."""


class CliUnavailable(KaggleRunError):
    """Raised when the Kaggle CLI binary cannot be probed."""


class CliError(KaggleRunError):
    """Raised when a Kaggle CLI invocation exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        args: tuple[str, ...] = (),
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.cli_args = args
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


@dataclass(frozen=True)
class Credentials:
    username: str
    key: str

    def to_json(self) -> dict[str, str]:
        return {"username": self.username, "key": self.key}

    @classmethod
    def from_json(cls, payload: object) -> "Credentials | None":
        """Return credentials when *payload* carries both fields, else ``None``."""
        if not isinstance(payload, Mapping):
            return None
        username = payload.get("username")
        key = payload.get("key")
        if not isinstance(username, str) or not isinstance(key, str):
            return None
        if not username or not key:
            return None
        return cls(username=username, key=key)


def _flag(value: Any, default: bool) -> bool:
    # kernels pull -m may write flags as "true"/"false" strings.
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"true", "1", "yes"}:
            return True
        if text in {"false", "0", "no", ""}:
            return False
        return default
    return bool(value)


def _dedupe(values: Any) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(value) for value in values))


@dataclass(frozen=True)
class ProjectConfig:
    project_name: str
    job_slug: str
    entry_file: str
    accelerator: str = "none"
    internet_enabled: bool = False
    privacy: str = "private"
    attached_datasets: tuple[str, ...] = ()
    attached_competitions: tuple[str, ...] = ()
    output_download_dir: str = DEFAULT_OUTPUT_DIR

    def __post_init__(self) -> None:
        # Set semantics: duplicates collapse, first occurrence wins.
        object.__setattr__(self, "attached_datasets", _dedupe(self.attached_datasets))
        object.__setattr__(
            self, "attached_competitions", _dedupe(self.attached_competitions)
        )

    def to_yaml_payload(self) -> dict[str, Any]:
        return {
            "project": self.project_name,
            "kernel_slug": self.job_slug,
            "code_file": self.entry_file,
            "accelerator": self.accelerator,
            "internet": self.internet_enabled,
            "privacy": self.privacy,
            "datasets": list(self.attached_datasets),
            "competitions": list(self.attached_competitions),
            "outputs": {"download_to": self.output_download_dir},
        }


@dataclass(frozen=True)
class JobMetadata:
    id: str
    title: str
    code_file: str
    kernel_type: str
    is_private: bool
    enable_gpu: bool
    enable_tpu: bool
    enable_internet: bool
    dataset_sources: tuple[str, ...] = ()
    competition_sources: tuple[str, ...] = ()
    language: str = KERNEL_LANGUAGE

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "code_file": self.code_file,
            "language": self.language,
            "kernel_type": self.kernel_type,
            "is_private": self.is_private,
            "enable_gpu": self.enable_gpu,
            "enable_tpu": self.enable_tpu,
            "enable_internet": self.enable_internet,
            "dataset_sources": list(self.dataset_sources),
            "competition_sources": list(self.competition_sources),
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "JobMetadata":
        return cls(
            id=str(payload.get("id", "")),
            title=str(payload.get("title", "")),
            code_file=str(payload.get("code_file", "")),
            language=str(payload.get("language", KERNEL_LANGUAGE)),
            kernel_type=str(payload.get("kernel_type", "script")),
            is_private=_flag(payload.get("is_private"), True),
            enable_gpu=_flag(payload.get("enable_gpu"), False),
            enable_tpu=_flag(payload.get("enable_tpu"), False),
            enable_internet=_flag(payload.get("enable_internet"), False),
            dataset_sources=tuple(payload.get("dataset_sources") or ()),
            competition_sources=tuple(payload.get("competition_sources") or ()),
        )


@dataclass(frozen=True)
class RunRecord:
    timestamp: str
    url: str

    def to_line(self) -> str:
        return f"{self.timestamp} | {self.url}"


# Listing items. ``ListItem`` is the tagged union rendered by
# ``kagglerun.listings.render_item``.


@dataclass(frozen=True)
class RunItem:
    timestamp: str
    url: str
    status: str | None = None  # complete | pending, latest run only
    is_latest: bool = False

    kind = "run"


@dataclass(frozen=True)
class KernelItem:
    ref: str
    url: str

    kind = "kernel"


@dataclass(frozen=True)
class DatasetItem:
    ref: str
    url: str

    kind = "dataset"


@dataclass(frozen=True)
class CompetitionItem:
    ref: str
    title: str
    deadline: str
    category: str
    url: str

    kind = "competition"


@dataclass(frozen=True)
class RemoteFile:
    name: str
    size: str = ""

    kind = "file"


ListItem = Union[RunItem, KernelItem, DatasetItem, CompetitionItem, RemoteFile]


@dataclass(frozen=True)
class CliResult:
    stdout: str
    stderr: str
    args: tuple[str, ...] = field(default=())

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True)
class CliStatus:
    available: bool
    version: str | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "version": self.version,
            "error": self.error,
        }
