"""
HTTP client for the synthesis service, with an optional simulation mode.

The client supports two operating modes:
- **Live**: posts text to the local synthesis server and returns WAV bytes.
- **Simulated**: generates a deterministic PCM16 tone wrapped in WAV so the
  scheduler, CLI and latency harness run without a server.

Each call maps to exactly one remote request; retries and skipping are the
scheduler's business.
"""

from __future__ import annotations

import logging
import math
from array import array
from typing import Any

import requests

from .decoder import encode_wav
from .errors import BackendError, BackendUnavailable, EmptyAudioError
from .provider_base import Backend, PlaybackConfig, SynthesisBackend

logger = logging.getLogger(__name__)

SIMULATED_VOICES: dict[Backend, list[str]] = {
    Backend.KOKORO: ["af_heart", "af_bella", "am_michael", "bf_emma"],
    Backend.PIPER: ["en_US-lessac-medium", "en_US-amy-medium", "en_GB-alan-medium"],
    Backend.OPENAI: ["alloy", "nova", "onyx", "shimmer"],
}


class SynthesisClient(SynthesisBackend):
    DEFAULT_BASE_URL = "http://127.0.0.1:9090"
    DEFAULT_SAMPLE_RATE = 24_000
    SIMULATED_SECONDS_PER_CHAR = 0.02

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_token: str | None = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        simulate: bool = False,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive.")

        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.sample_rate = sample_rate
        self.timeout = timeout
        self.simulate = simulate

        self._session = session
        self._session_owner = False
        self._connected = False

    # ------------------------------------------------------------------ #
    # Public API

    def connect(self) -> None:
        if self._connected:
            return

        if self.simulate:
            self._connected = True
            logger.debug("SynthesisClient running in simulation mode.")
            return

        if self._session is None:
            self._session = requests.Session()
            self._session_owner = True

        self._session.headers.update({"Accept": "audio/wav, application/json"})
        if self.api_token:
            self._session.headers["Authorization"] = f"Bearer {self.api_token}"
        self._connected = True

    def synthesize(self, text: str, config: PlaybackConfig) -> bytes:
        if not self._connected:
            self.connect()

        if self.simulate:
            return self._simulate_audio(text, config)

        payload = {
            "text": text,
            "voice": config.voice,
            "speed": config.speed,
            "backend": config.backend.value,
            "sample_rate": self.sample_rate,
            "format": "wav",
        }
        response = self._request("POST", "/synthesize", json=payload)
        try:
            audio = response.content
        finally:
            response.close()

        if not audio:
            raise EmptyAudioError(response.status_code, "synthesis returned no audio")
        logger.debug("Synthesized %s chars into %s bytes", len(text), len(audio))
        return audio

    def list_voices(self, backend: Backend) -> list[str]:
        backend = Backend(backend)
        if not self._connected:
            self.connect()

        if self.simulate:
            return list(SIMULATED_VOICES[backend])

        response = self._request("GET", "/voices", params={"backend": backend.value})
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendError(response.status_code, "voice list is not valid JSON") from exc
        finally:
            response.close()
        return _parse_voice_ids(payload)

    def cancel(self, backend: Backend) -> None:
        if self.simulate or not self._connected or self._session is None:
            return
        try:
            response = self._session.post(
                f"{self.base_url}/cancel",
                json={"backend": Backend(backend).value},
                timeout=self.timeout,
            )
            response.close()
        except requests.RequestException as exc:
            logger.debug("Cancel hint failed: %s", exc)

    def close(self) -> None:
        self._connected = False
        if self._session is not None and self._session_owner:
            self._session.close()
        self._session = None
        self._session_owner = False

    # ------------------------------------------------------------------ #
    # Live helpers

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        assert self._session is not None
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.ConnectionError as exc:
            raise BackendUnavailable(None, f"unable to connect to {self.base_url}") from exc
        except requests.exceptions.Timeout as exc:
            raise BackendUnavailable(None, "timed out waiting for the synthesis server") from exc
        except requests.RequestException as exc:
            raise BackendUnavailable(None, str(exc)) from exc

        if 500 <= response.status_code < 600:
            reason = response.reason or "upstream error"
            response.close()
            raise BackendUnavailable(response.status_code, reason)
        if response.status_code >= 400:
            detail = response.text[:256] or response.reason or ""
            response.close()
            raise BackendError(response.status_code, detail)
        return response

    # ------------------------------------------------------------------ #
    # Simulation helpers

    def _simulate_audio(self, text: str, config: PlaybackConfig) -> bytes:
        payload = text.strip()
        if not payload:
            raise EmptyAudioError(None, "nothing to synthesize")
        seconds = max(0.2, len(payload) * self.SIMULATED_SECONDS_PER_CHAR / config.speed)
        sample_count = int(self.sample_rate * seconds)
        freq = 220.0 + (sum(payload.encode("utf-8")) % 220)
        amplitude = 0.25 * 32767
        samples = array(
            "h",
            (
                int(amplitude * math.sin(2 * math.pi * freq * n / self.sample_rate))
                for n in range(sample_count)
            ),
        )
        return encode_wav(samples.tobytes(), self.sample_rate)


def _parse_voice_ids(payload: Any) -> list[str]:
    voices = payload.get("voices") if isinstance(payload, dict) else payload
    if not isinstance(voices, list):
        return []

    ids: list[str] = []
    for voice in voices:
        if isinstance(voice, str):
            ids.append(voice)
        elif isinstance(voice, dict):
            voice_id = voice.get("id") or voice.get("voice_id") or voice.get("name")
            if voice_id:
                ids.append(str(voice_id))
    return ids
