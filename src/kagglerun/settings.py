from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from kagglerun.models import ACCELERATORS, ConfigError
from kagglerun.utils import env_default, kagglerun_home

DEFAULT_SETTINGS_FILE = "settings.yaml"
MIN_POLL_INTERVAL_SECONDS = 1
SETTINGS_ALLOWED_KEYS = {
    "cli_path",
    "default_accelerator",
    "default_internet",
    "auto_download_on_complete",
    "poll_interval_seconds",
    "poll_timeout_seconds",
    "site_url",
}


@dataclass(frozen=True)
class Settings:
    cli_path: str = "kaggle"
    default_accelerator: str = "none"
    default_internet: bool = False
    auto_download_on_complete: bool = True
    poll_interval_seconds: int = 10
    poll_timeout_seconds: int = 600
    site_url: str = "https://www.kaggle.com"

    def to_json(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    def with_overrides(self, **overrides: Any) -> "Settings":
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return _validate(replace(self, **changes), label="overrides")


def default_settings_path() -> Path:
    raw = env_default("KAGGLERUN_SETTINGS", "")
    if raw:
        return Path(raw).expanduser().resolve()
    return kagglerun_home() / DEFAULT_SETTINGS_FILE


def _coerce_str(value: Any, *, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string")
    return value.strip()


def _coerce_bool(value: Any, *, label: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean")
    return value


def _coerce_seconds(value: Any, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer number of seconds")
    if value < 0:
        raise ConfigError(f"{label} must be >= 0")
    return value


def _coerce_accelerator(value: Any, *, label: str) -> str:
    text = _coerce_str(value, label=label).lower()
    if text not in ACCELERATORS:
        raise ConfigError(f"{label} must be one of {list(ACCELERATORS)}")
    return text


def _validate(settings: Settings, *, label: str) -> Settings:
    return Settings(
        cli_path=_coerce_str(settings.cli_path, label=f"{label}.cli_path"),
        default_accelerator=_coerce_accelerator(
            settings.default_accelerator, label=f"{label}.default_accelerator"
        ),
        default_internet=_coerce_bool(
            settings.default_internet, label=f"{label}.default_internet"
        ),
        auto_download_on_complete=_coerce_bool(
            settings.auto_download_on_complete,
            label=f"{label}.auto_download_on_complete",
        ),
        poll_interval_seconds=_coerce_seconds(
            settings.poll_interval_seconds, label=f"{label}.poll_interval_seconds"
        ),
        poll_timeout_seconds=_coerce_seconds(
            settings.poll_timeout_seconds, label=f"{label}.poll_timeout_seconds"
        ),
        site_url=_coerce_str(settings.site_url, label=f"{label}.site_url").rstrip("/"),
    )


def parse_settings(raw: Any, *, label: str = "settings") -> Settings:
    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise ConfigError(f"{label} must be a mapping")
    unknown = sorted(set(str(key) for key in raw) - SETTINGS_ALLOWED_KEYS)
    if unknown:
        raise ConfigError(
            f"{label} has unknown keys: {unknown}. "
            f"Allowed keys: {sorted(SETTINGS_ALLOWED_KEYS)}"
        )
    return _validate(replace(Settings(), **{str(k): v for k, v in raw.items()}), label=label)


def load_settings(path: str | Path | None = None) -> Settings:
    """Load user settings; a missing file yields the built-in defaults."""
    settings_path = (
        Path(path).expanduser().resolve() if path else default_settings_path()
    )
    if not settings_path.exists():
        if path:
            raise ConfigError(f"Settings file not found: {settings_path}")
        return Settings()
    try:
        raw = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {settings_path}: {exc}") from exc
    return parse_settings(raw, label=str(settings_path))
