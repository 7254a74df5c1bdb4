"""Centralized logging configuration for kagglerun."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_STREAM_HANDLER_ID = "kagglerun_stream"
_FILE_HANDLER_ID = "kagglerun_file"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"
_VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)


def _resolve_level(level: int | None, verbosity: int) -> int:
    if level is not None:
        return level
    if verbosity > 0:
        return _VERBOSITY_LEVELS[min(verbosity, len(_VERBOSITY_LEVELS) - 1)]
    env_level = os.environ.get("KAGGLERUN_LOG_LEVEL", "").strip().upper()
    resolved = getattr(logging, env_level, None) if env_level else None
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


def _find_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_kagglerun_handler_id", None) == handler_id:
            return handler
    return None


def _attach(root: logging.Logger, handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_kagglerun_handler_id", handler_id)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``kagglerun`` namespace."""
    return logging.getLogger(f"kagglerun.{name}")


def setup_logging(*, level: int | None = None, verbosity: int = 0) -> None:
    """Configure the ``kagglerun`` logger hierarchy.

    Precedence for the stream level: explicit *level*, then *verbosity*
    (``-v`` → INFO, ``-vv`` → DEBUG), then ``KAGGLERUN_LOG_LEVEL``.
    Diagnostics go to stderr so they never mix with ``--format json`` output.
    When ``KAGGLERUN_LOG_FILE`` is set, a file handler records at least
    INFO-level command lifecycle events.
    """
    stream_level = _resolve_level(level, verbosity)
    root = logging.getLogger("kagglerun")

    stream_handler = _find_handler(root, _STREAM_HANDLER_ID)
    if stream_handler is None:
        stream_handler = logging.StreamHandler()
        _attach(root, stream_handler, _STREAM_HANDLER_ID)
    stream_handler.setLevel(stream_level)

    file_level: int | None = None
    file_handler = _find_handler(root, _FILE_HANDLER_ID)
    file_path_raw = os.environ.get("KAGGLERUN_LOG_FILE", "").strip()
    if file_path_raw:
        file_path = Path(file_path_raw).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        stale = (
            file_handler is not None
            and isinstance(file_handler, logging.FileHandler)
            and Path(file_handler.baseFilename).resolve() != file_path
        )
        if stale and file_handler is not None:
            root.removeHandler(file_handler)
            file_handler.close()
            file_handler = None
        if file_handler is None:
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
            _attach(root, file_handler, _FILE_HANDLER_ID)
        file_level = min(stream_level, logging.INFO)
        file_handler.setLevel(file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    root.setLevel(stream_level if file_level is None else min(stream_level, file_level))
