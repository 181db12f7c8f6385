"""
Structured event logging for readaloud.

Scheduler events go through `EventLogger`, which renders them either as a
human-readable line or as one JSON object per line. Secrets are masked and
segment text is shortened so whole articles never land in the log.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

TEXT_PREVIEW_CHARS = 40
SECRET_MARKERS = ("token", "secret", "password")


class LogFormat(str, Enum):
    HUMAN = "human"
    JSON = "json"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return lowered.endswith("key") or any(marker in lowered for marker in SECRET_MARKERS)


def scrub(key: str, value: Any) -> Any:
    """Mask secrets down to their last four characters and shorten segment text."""
    if not isinstance(value, str):
        return value
    if _is_secret(key):
        return "****" if len(value) <= 4 else "****" + value[-4:]
    if key == "text" and len(value) > TEXT_PREVIEW_CHARS:
        return value[:TEXT_PREVIEW_CHARS] + "…"
    return value


def _render_json(event: str, stamp: str, fields: Mapping[str, Any]) -> str:
    return json.dumps({"timestamp": stamp, "event": event, "fields": fields}, separators=(",", ":"), default=str)


def _render_human(event: str, stamp: str, fields: Mapping[str, Any]) -> str:
    pairs = " ".join(f"{name}={fields[name]}" for name in sorted(fields))
    return f"[{event}] {stamp} | {pairs}" if pairs else f"[{event}] {stamp}"


_RENDERERS = {LogFormat.HUMAN: _render_human, LogFormat.JSON: _render_json}


class EventLogger:
    """Emits named events with key/value fields on a stdlib logger.

    `context` fields are attached to every event; `bind` derives a logger
    with extra context (the page being read, for instance).
    """

    def __init__(
        self,
        logger: logging.Logger,
        log_format: LogFormat = LogFormat.HUMAN,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.logger = logger
        self.log_format = log_format
        self.context = dict(context or {})

    def bind(self, **context: Any) -> EventLogger:
        return EventLogger(self.logger, self.log_format, {**self.context, **context})

    def log(self, event_type: str, *, level: str = "info", **fields: Any) -> None:
        numeric = logging.getLevelName(level.upper())
        if not isinstance(numeric, int):
            numeric = logging.INFO
        if not self.logger.isEnabledFor(numeric):
            return

        merged = {**self.context, **fields}
        cleaned = {key: scrub(key, value) for key, value in merged.items()}
        stamp = datetime.now(timezone.utc).isoformat()
        self.logger.log(numeric, _RENDERERS[self.log_format](event_type, stamp, cleaned))


def create_event_logger(logger: logging.Logger, fmt: str | LogFormat) -> EventLogger:
    """Unknown formats fall back to human-readable output."""
    try:
        return EventLogger(logger, LogFormat(fmt))
    except ValueError:
        return EventLogger(logger, LogFormat.HUMAN)


def configure_logging(verbosity: int, quiet: bool) -> int:
    """Configure the root logger from CLI verbosity flags; returns the chosen level."""
    if quiet:
        level = logging.ERROR
    elif verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return level
