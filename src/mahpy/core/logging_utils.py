from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import LogConfig

ROOT_LOGGER_NAME = "mahpy"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _coerce_field(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce_field(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _coerce_field(item) for key, item in value.items()}
    return str(value)


def format_event(event: str, **fields: Any) -> str:
    """Render a structured event as a single-line JSON object."""

    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = _coerce_field(value)
    return json.dumps(payload, sort_keys=False, ensure_ascii=False)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line; `exc` is rendered as type and message."""

    if not logger.isEnabledFor(level):
        return
    if exc is not None:
        fields["exc"] = exc
    logger.log(level, format_event(event, **fields))


def setup_logging(config: "LogConfig") -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(config.level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if config.path is not None:
        path = Path(config.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    root.propagate = False
    return root
