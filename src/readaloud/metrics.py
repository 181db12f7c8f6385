"""
Latency metrics for incremental playback.

Each started segment records when it was requested, when its audio was ready,
when the device started it and when it ended, so prefetch effectiveness shows
up as near-zero ready latency and small inter-segment gaps.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Sequence


@dataclass
class SegmentMetrics:
    segment_index: int
    char_len: int
    request_start: float
    audio_ready: float
    playback_start: float
    playback_end: Optional[float] = None

    @property
    def ready_latency_ms(self) -> float:
        return round(max(0.0, (self.audio_ready - self.request_start) * 1000.0), 6)

    @property
    def startup_latency_ms(self) -> float:
        return round(max(0.0, (self.playback_start - self.request_start) * 1000.0), 6)

    @property
    def play_duration_ms(self) -> float:
        if self.playback_end is None:
            return 0.0
        return round(max(0.0, (self.playback_end - self.playback_start) * 1000.0), 6)


def summarise_metrics(metrics: Sequence[SegmentMetrics]) -> dict[str, float]:
    if not metrics:
        return {
            "p95_ready_ms": 0.0,
            "p95_startup_ms": 0.0,
            "avg_inter_segment_gap_ms": 0.0,
        }

    ready = [m.ready_latency_ms for m in metrics]
    startup = [m.startup_latency_ms for m in metrics]
    gaps = [
        max(0.0, (metrics[i].playback_start - metrics[i - 1].playback_end) * 1000.0)
        for i in range(1, len(metrics))
        if metrics[i - 1].playback_end is not None
    ]

    return {
        "p95_ready_ms": _percentile(ready, 0.95),
        "p95_startup_ms": _percentile(startup, 0.95),
        "avg_inter_segment_gap_ms": sum(gaps) / len(gaps) if gaps else 0.0,
    }


def emit_metrics_json(metrics: Sequence[SegmentMetrics], path: str | Path | None = None) -> dict:
    segment_payload = []
    for metric in metrics:
        payload = asdict(metric)
        payload.update(
            {
                "ready_latency_ms": metric.ready_latency_ms,
                "startup_latency_ms": metric.startup_latency_ms,
                "play_duration_ms": metric.play_duration_ms,
            }
        )
        segment_payload.append(payload)

    document = {"segments": segment_payload, "summary": summarise_metrics(metrics)}

    if path is not None:
        Path(path).write_text(json.dumps(document, indent=2), encoding="utf-8")

    return document


def _percentile(values: Sequence[float], percentile: float) -> float:
    if not values:
        return 0.0

    ordered = sorted(values)
    rank = percentile * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return ordered[int(rank)]

    weight = rank - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight
