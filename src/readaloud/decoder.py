"""
Decoding of synthesized audio into PCM16 frames.

The synthesis service is asked for RIFF/WAVE PCM16; anything else is treated
as a malformed segment so the scheduler can skip it.
"""

from __future__ import annotations

import io
import wave

from .errors import DecodeError
from .provider_base import DecodedAudio


def decode_audio(payload: bytes) -> DecodedAudio:
    if not payload:
        raise DecodeError("Audio payload is empty.")
    if payload[:4] != b"RIFF" or payload[8:12] != b"WAVE":
        raise DecodeError("Unsupported audio container (expected RIFF/WAVE).")

    try:
        with wave.open(io.BytesIO(payload), "rb") as reader:
            sample_width = reader.getsampwidth()
            sample_rate = reader.getframerate()
            channels = reader.getnchannels()
            pcm = reader.readframes(reader.getnframes())
    except (wave.Error, EOFError) as exc:
        raise DecodeError(f"Malformed WAV payload: {exc}") from exc

    if sample_width != 2:
        raise DecodeError(f"Unsupported sample width {sample_width * 8} bits (expected 16).")
    if not pcm:
        raise DecodeError("WAV payload contains no audio frames.")

    # Drop a trailing partial frame; PCM16 writes need whole frames.
    frame_bytes = 2 * channels
    usable = len(pcm) - (len(pcm) % frame_bytes)
    return DecodedAudio(pcm=pcm[:usable], sample_rate=sample_rate, channels=channels)


def encode_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap PCM16 samples in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as writer:
        writer.setnchannels(channels)
        writer.setsampwidth(2)
        writer.setframerate(sample_rate)
        writer.writeframes(pcm)
    return buffer.getvalue()
