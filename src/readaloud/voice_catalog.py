"""
Voice catalog retrieval and caching utilities.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from pathlib import Path
from typing import Iterable

from .errors import BackendError
from .provider_base import Backend, SynthesisBackend

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(hours=24)
READALOUD_HOME = Path(os.getenv("READALOUD_HOME", Path.home() / ".readaloud"))

FALLBACK_VOICES: dict[Backend, list[str]] = {
    Backend.KOKORO: ["af_heart", "af_bella", "am_michael"],
    Backend.PIPER: ["en_US-lessac-medium"],
    Backend.OPENAI: ["alloy", "nova"],
}


def fetch_voices(
    client: SynthesisBackend,
    backend: Backend | str,
    *,
    cache_dir: Path | None = None,
    force_refresh: bool = False,
) -> list[str]:
    """
    Return voice ids for `backend`.

    A fresh on-disk list wins unless `force_refresh` is set. A failing backend
    is never fatal: the built-in fallback list is returned instead.
    """

    backend = Backend(backend)
    cache_path = _resolve_cache_path(cache_dir, backend)

    if not force_refresh:
        cached = _load_cache(cache_path)
        if cached is not None:
            return cached

    try:
        voices = client.list_voices(backend)
    except BackendError as exc:
        logger.warning("Voice listing failed for %s (%s); using fallback voices.", backend.value, exc)
        return list(FALLBACK_VOICES.get(backend, []))

    if voices:
        _write_cache(cache_path, voices)
    return voices


def fuzzy_match(query: str, voices: Iterable[str]) -> str | None:
    query = query.strip()
    if not query:
        return None

    voices = list(voices)
    query_lower = query.lower()
    for voice in voices:
        if voice.lower() == query_lower:
            return voice

    best: str | None = None
    best_score = 0.0
    for voice in voices:
        voice_lower = voice.lower()
        if query_lower in voice_lower:
            # Substring hits count as at least a moderate match so "bella"
            # finds "af_bella".
            score = max(len(query_lower) / len(voice_lower), 0.5)
        else:
            score = SequenceMatcher(None, query_lower, voice_lower).ratio()
        if score > best_score:
            best_score = score
            best = voice

    return best if best_score >= 0.5 else None


def resolve_voice(requested: str | None, voices: Iterable[str]) -> str | None:
    """Pick the requested voice, a close match, or the first available one."""
    voices = list(voices)
    if not voices:
        return None
    if requested:
        if requested in voices:
            return requested
        matched = fuzzy_match(requested, voices)
        if matched is not None:
            return matched
        logger.info("Voice %r not available; falling back to %r.", requested, voices[0])
    return voices[0]


def _resolve_cache_path(cache_dir: Path | None, backend: Backend) -> Path:
    directory = cache_dir if cache_dir is not None else READALOUD_HOME
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"voices-{backend.value}.json"


def _load_cache(path: Path) -> list[str] | None:
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None

    timestamp_raw = data.get("fetched_at")
    voices = data.get("voices")
    if timestamp_raw is None or not isinstance(voices, list) or not voices:
        return None

    try:
        fetched_at = datetime.fromisoformat(timestamp_raw)
    except ValueError:
        return None

    if fetched_at.tzinfo is None:
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)

    if datetime.now(timezone.utc) - fetched_at > CACHE_TTL:
        return None

    return [str(voice) for voice in voices]


def _write_cache(path: Path, voices: list[str]) -> None:
    payload = {
        "fetched_at": datetime.now(timezone.utc).isoformat(),
        "voices": voices,
    }
    try:
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.debug("Could not write voice cache %s: %s", path, exc)
