from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

_log = logging.getLogger("kagglerun.utils")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_iso_timestamp(value: str) -> dt.datetime | None:
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def slugify(value: str) -> str:
    """Lower-case *value* and collapse non-alphanumeric runs into ``-``."""
    return _SLUG_INVALID_RE.sub("-", value.lower()).strip("-")


def ref_to_dirname(ref: str) -> str:
    """Map an ``owner/name`` reference to a single path component."""
    return re.sub(r"[\\/]", "__", ref)


def atomic_write_text(path: Path, content: str, *, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(tmp, mode)
        tmp.replace(path)
    except Exception:
        # Clean up the temp file so we don't leave partial writes on disk.
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n")


def read_json_mapping(path: Path) -> dict[str, Any] | None:
    """Read a JSON object from *path*; ``None`` when missing or unreadable."""
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        _log.warning("Ignoring corrupt JSON file %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        _log.warning("Ignoring non-object JSON file %s", path)
        return None
    return payload


def env_default(key: str, fallback: str) -> str:
    value = os.environ.get(key)
    return value if value else fallback


def kagglerun_home() -> Path:
    return Path(env_default("KAGGLERUN_HOME", "~/.kagglerun")).expanduser()


def dir_has_entries(path: Path) -> bool:
    try:
        return any(path.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return False


def has_file_modified_since(path: Path, since: dt.datetime) -> bool:
    """True when any regular file below *path* has an mtime at or after *since*."""
    threshold = since.timestamp()
    if not path.is_dir():
        return False
    for child in path.rglob("*"):
        try:
            if child.is_file() and child.stat().st_mtime >= threshold:
                return True
        except OSError:
            continue
    return False
