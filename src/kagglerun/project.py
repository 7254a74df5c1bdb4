"""Project descriptor store: ``kaggle.yml`` and ``kernel-metadata.json``.

``kaggle.yml`` (:class:`ProjectConfig`) is the source of truth; the kernel
metadata file is a projection re-derived from it before every push.
"""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from kagglerun._logging import get_logger
from kagglerun.models import (
    ACCELERATORS,
    DEFAULT_OUTPUT_DIR,
    PRIVACY_LEVELS,
    ConfigError,
    JobMetadata,
    NotInitialized,
    ProjectConfig,
)
from kagglerun.utils import atomic_write_text, read_json_mapping, slugify, write_json

PROJECT_FILE = "kaggle.yml"
METADATA_FILE = "kernel-metadata.json"
NOTEBOOK_SUFFIX = ".ipynb"
CODE_FILE_CHOICES = ("notebook.ipynb", "main.py")

_log = get_logger("project")


def kernel_type_for(code_file: str) -> str:
    return "notebook" if code_file.lower().endswith(NOTEBOOK_SUFFIX) else "script"


def derive_job_slug(owner: str, project_name: str) -> str:
    owner_text = owner.strip()
    name = slugify(project_name)
    if not owner_text or not name:
        raise ConfigError(
            f"Cannot derive a kernel slug from owner={owner!r} project={project_name!r}"
        )
    return f"{owner_text}/{name}"


def project_to_metadata(config: ProjectConfig, *, title: str | None = None) -> JobMetadata:
    return JobMetadata(
        id=config.job_slug,
        title=title or config.project_name,
        code_file=config.entry_file,
        kernel_type=kernel_type_for(config.entry_file),
        is_private=config.privacy == "private",
        enable_gpu=config.accelerator == "gpu",
        enable_tpu=config.accelerator == "tpu",
        enable_internet=config.internet_enabled,
        dataset_sources=config.attached_datasets,
        competition_sources=config.attached_competitions,
    )


def metadata_to_project(metadata: JobMetadata) -> ProjectConfig:
    """Rebuild a project descriptor from kernel metadata pulled with ``-m``."""
    accelerator = "gpu" if metadata.enable_gpu else "tpu" if metadata.enable_tpu else "none"
    return ProjectConfig(
        project_name=slugify(metadata.title) or metadata.id.split("/")[-1],
        job_slug=metadata.id,
        entry_file=metadata.code_file,
        accelerator=accelerator,
        internet_enabled=metadata.enable_internet,
        privacy="private" if metadata.is_private else "public",
        attached_datasets=metadata.dataset_sources,
        attached_competitions=metadata.competition_sources,
    )


def _require_str(raw: dict[str, Any], key: str, *, label: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label}: '{key}' must be a non-empty string")
    return value.strip()


def _optional_choice(
    raw: dict[str, Any], key: str, choices: tuple[str, ...], default: str, *, label: str
) -> str:
    value = raw.get(key)
    if value is None:
        return default
    text = str(value).strip().lower()
    if text not in choices:
        raise ConfigError(f"{label}: '{key}' must be one of {list(choices)}")
    return text


def _optional_str_list(raw: dict[str, Any], key: str, *, label: str) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{label}: '{key}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{label}: '{key}' must contain only strings")
        if item.strip():
            out.append(item.strip())
    return tuple(out)


def parse_project_config(
    raw: Any,
    *,
    label: str = PROJECT_FILE,
    default_accelerator: str = "none",
    default_internet: bool = False,
) -> ProjectConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"{label} must be a mapping")
    internet = raw.get("internet")
    if internet is not None and not isinstance(internet, bool):
        raise ConfigError(f"{label}: 'internet' must be a boolean")
    outputs = raw.get("outputs") or {}
    if not isinstance(outputs, dict):
        raise ConfigError(f"{label}: 'outputs' must be a mapping")
    download_to = outputs.get("download_to") or DEFAULT_OUTPUT_DIR
    if not isinstance(download_to, str):
        raise ConfigError(f"{label}: 'outputs.download_to' must be a string")
    return ProjectConfig(
        project_name=_require_str(raw, "project", label=label),
        job_slug=_require_str(raw, "kernel_slug", label=label),
        entry_file=_require_str(raw, "code_file", label=label),
        accelerator=_optional_choice(
            raw, "accelerator", ACCELERATORS, default_accelerator, label=label
        ),
        internet_enabled=default_internet if internet is None else internet,
        privacy=_optional_choice(raw, "privacy", PRIVACY_LEVELS, "private", label=label),
        attached_datasets=_optional_str_list(raw, "datasets", label=label),
        attached_competitions=_optional_str_list(raw, "competitions", label=label),
        output_download_dir=download_to,
    )


class ProjectStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    @classmethod
    def from_dir(cls, root: str | Path) -> "ProjectStore":
        return cls(Path(root).expanduser().resolve())

    @property
    def config_path(self) -> Path:
        return self.root / PROJECT_FILE

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILE

    def is_initialized(self) -> bool:
        return self.config_path.exists()

    def output_dir(self, config: ProjectConfig | None = None) -> Path:
        cfg = config if config is not None else self.load()
        return self.root / cfg.output_download_dir

    def load(
        self, *, default_accelerator: str = "none", default_internet: bool = False
    ) -> ProjectConfig:
        if not self.config_path.exists():
            raise NotInitialized(self.config_path)
        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {exc}") from exc
        return parse_project_config(
            raw or {},
            label=str(self.config_path),
            default_accelerator=default_accelerator,
            default_internet=default_internet,
        )

    def save(self, config: ProjectConfig) -> None:
        text = yaml.safe_dump(config.to_yaml_payload(), sort_keys=False)
        atomic_write_text(self.config_path, text)
        _log.debug("project_saved path=%s slug=%s", self.config_path, config.job_slug)

    def read_metadata(self) -> dict[str, Any] | None:
        return read_json_mapping(self.metadata_path)

    def write_metadata(self, metadata: JobMetadata) -> None:
        existing = self.read_metadata() or {}
        # Unknown keys written by `kernels pull -m` (e.g. model_sources) are kept.
        write_json(self.metadata_path, {**existing, **metadata.to_json()})

    def sync_metadata(self, config: ProjectConfig) -> JobMetadata:
        """Re-derive kernel metadata from *config* and persist both files."""
        existing = self.read_metadata() or {}
        existing_id = str(existing.get("id") or "").strip()
        if existing_id and existing_id != config.job_slug:
            raise ConfigError(
                f"{self.metadata_path.name} is linked to '{existing_id}' but "
                f"{PROJECT_FILE} declares kernel_slug '{config.job_slug}'. "
                f"Run 'kagglerun link {config.job_slug}' or "
                f"'kagglerun link {existing_id}' to relink explicitly."
            )
        title = str(existing.get("title") or "").strip() or None
        metadata = project_to_metadata(config, title=title)
        self.save(config)
        self.write_metadata(metadata)
        _log.info(
            "metadata_synced slug=%s code_file=%s gpu=%s tpu=%s internet=%s",
            metadata.id,
            metadata.code_file,
            metadata.enable_gpu,
            metadata.enable_tpu,
            metadata.enable_internet,
        )
        return metadata

    def attach_dataset(self, ref: str) -> ProjectConfig:
        config = self.load()
        updated = replace(
            config, attached_datasets=(*config.attached_datasets, ref.strip())
        )
        self.save(updated)
        return updated

    def attach_competition(self, ref: str) -> ProjectConfig:
        config = self.load()
        updated = replace(
            config, attached_competitions=(*config.attached_competitions, ref.strip())
        )
        self.save(updated)
        return updated

    def relink(self, slug: str) -> ProjectConfig:
        """Point the project at *slug*; the only way ``kernel_slug`` changes."""
        if "/" not in slug:
            raise ConfigError(f"Kernel slug must look like 'owner/name', got '{slug}'")
        config = self.load()
        updated = replace(config, job_slug=slug)
        self.save(updated)
        existing = self.read_metadata()
        if existing is not None and existing.get("id") != slug:
            existing["id"] = slug
            write_json(self.metadata_path, existing)
        _log.info("project_relinked old=%s new=%s", config.job_slug, slug)
        return updated

    def init_project(
        self,
        *,
        title: str,
        username: str,
        code_file: str = CODE_FILE_CHOICES[0],
        accelerator: str = "none",
        internet: bool = False,
    ) -> ProjectConfig:
        if accelerator not in ACCELERATORS:
            raise ConfigError(f"accelerator must be one of {list(ACCELERATORS)}")
        project_name = slugify(title)
        config = ProjectConfig(
            project_name=project_name,
            job_slug=derive_job_slug(username, title),
            entry_file=code_file,
            accelerator=accelerator,
            internet_enabled=internet,
        )
        self.root.mkdir(parents=True, exist_ok=True)
        write_json(self.metadata_path, project_to_metadata(config, title=title).to_json())
        self.save(config)

        code_path = self.root / code_file
        if not code_path.exists():
            if kernel_type_for(code_file) == "script":
                atomic_write_text(code_path, 'print("Hello from Kaggle!")\n')
            else:
                notebook = {"cells": [], "metadata": {}, "nbformat": 4, "nbformat_minor": 5}
                atomic_write_text(code_path, json.dumps(notebook, indent=2) + "\n")
        _log.info("project_initialized root=%s slug=%s", self.root, config.job_slug)
        return config
