"""
Persisted listening preferences.

Stored values are merged over the defaults on every read, so a missing or
partially written file never blocks a session from starting.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .provider_base import Backend

logger = logging.getLogger(__name__)

PREFERENCES_FILENAME = "preferences.json"


@dataclass
class Preferences:
    backend: str = Backend.KOKORO.value
    voice: str | None = None
    speed: float = 1.0
    voice_ratings: dict[str, int] = field(default_factory=dict)
    progress: dict[str, int] = field(default_factory=dict)


def page_key(document_id: str) -> str:
    """Stable, short key for per-page progress."""
    return hashlib.sha256(document_id.encode("utf-8")).hexdigest()[:16]


class PreferenceStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self) -> Preferences:
        defaults = Preferences()
        if not self.path.exists():
            return defaults

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable preferences at %s: %s", self.path, exc)
            return defaults
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed preferences at %s", self.path)
            return defaults

        merged: dict[str, Any] = asdict(defaults)
        for key in merged:
            if key in data and data[key] is not None:
                merged[key] = data[key]

        try:
            Backend(merged["backend"])
        except ValueError:
            merged["backend"] = defaults.backend
        try:
            merged["speed"] = float(merged["speed"])
        except (TypeError, ValueError):
            merged["speed"] = defaults.speed
        merged["voice_ratings"] = _int_mapping(merged["voice_ratings"])
        merged["progress"] = _int_mapping(merged["progress"])
        return Preferences(**merged)

    def set(self, prefs: Preferences) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(asdict(prefs), indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def update(self, **changes: Any) -> Preferences:
        prefs = self.get()
        for key, value in changes.items():
            if not hasattr(prefs, key):
                raise AttributeError(f"Unknown preference {key!r}")
            setattr(prefs, key, value)
        self.set(prefs)
        return prefs

    def rate_voice(self, voice: str, stars: int) -> Preferences:
        if not 1 <= int(stars) <= 5:
            raise ValueError("stars must be between 1 and 5")
        prefs = self.get()
        prefs.voice_ratings[voice] = int(stars)
        self.set(prefs)
        return prefs

    def save_progress(self, document_id: str, index: int) -> None:
        prefs = self.get()
        prefs.progress[page_key(document_id)] = int(index)
        self.set(prefs)

    def load_progress(self, document_id: str) -> int | None:
        return self.get().progress.get(page_key(document_id))


def _int_mapping(value: Any) -> dict[str, int]:
    if not isinstance(value, dict):
        return {}
    result: dict[str, int] = {}
    for key, item in value.items():
        try:
            result[str(key)] = int(item)
        except (TypeError, ValueError):
            continue
    return result
