from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from statistics import fmean
from typing import Callable, List

from readaloud.metrics import SegmentMetrics, emit_metrics_json, summarise_metrics
from readaloud.provider_base import Backend, DecodedAudio, PlaybackConfig
from readaloud.scheduler import PlaybackScheduler
from readaloud.segmenter import segment_document
from readaloud.synthesis_client import SynthesisClient

HARNESS_TEXT = (
    "Readaloud harness paragraph. "
    "This text is used to exercise the incremental scheduler and produce metrics. "
    "It should be long enough to span several segments so that prefetching has "
    "something to do.\n\n"
    "A second paragraph follows. Its sentences are short. They still coalesce "
    "into segments of a reasonable size for the selected backend."
)


class InstantSource:
    def stop(self) -> None:
        return None


class InstantOutput:
    """Audio output that 'plays' each segment by completing on the next loop tick."""

    def __init__(self) -> None:
        self.started: list[int] = []

    def start(self, audio: DecodedAudio, on_ended: Callable[[], None]) -> InstantSource:
        self.started.append(audio.frame_count)
        asyncio.get_running_loop().call_soon(on_ended)
        return InstantSource()


class FinishedSink:
    def __init__(self) -> None:
        self.done = asyncio.Event()

    def on_position_changed(self, index: int) -> None:
        return None

    def on_status_changed(self, text: str) -> None:
        return None

    def on_finished(self) -> None:
        self.done.set()


async def run_iteration(text: str, backend: Backend = Backend.KOKORO) -> List[SegmentMetrics]:
    segmentation = segment_document(text, backend=backend)
    client = SynthesisClient(simulate=True)
    client.connect()
    sink = FinishedSink()
    scheduler = PlaybackScheduler(
        segmentation,
        client,
        InstantOutput(),
        config=PlaybackConfig(backend, "harness"),
        sink=sink,
    )
    try:
        scheduler.play(0)
        await sink.done.wait()
    finally:
        await scheduler.close()
        client.close()
    return scheduler.metrics


def build_report(all_metrics: List[List[SegmentMetrics]], output: Path) -> dict:
    flat_metrics = [metric for metrics in all_metrics for metric in metrics]
    summary = summarise_metrics(flat_metrics)
    ready = [m.ready_latency_ms for m in flat_metrics]
    startup = [m.startup_latency_ms for m in flat_metrics]
    summary["avg_ready_ms"] = fmean(ready) if ready else 0.0
    summary["avg_startup_ms"] = fmean(startup) if startup else 0.0

    per_iteration = []
    for idx, metrics in enumerate(all_metrics, start=1):
        document = emit_metrics_json(metrics)
        per_iteration.append({
            "iteration": idx,
            "segments": len(metrics),
            "summary": document["summary"],
            "per_segment": document["segments"],
        })

    report = {
        "iterations": len(all_metrics),
        "summary": summary,
        "iterations_detail": per_iteration,
    }

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(report, indent=2), encoding="utf-8")
    return report


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="readaloud latency harness")
    parser.add_argument("--iterations", type=int, default=5, help="Number of runs to average")
    parser.add_argument(
        "--backend",
        choices=[backend.value for backend in Backend],
        default=Backend.KOKORO.value,
    )
    parser.add_argument("--output", type=Path, default=Path("latency_report.json"))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    all_metrics: List[List[SegmentMetrics]] = []
    for _ in range(max(1, args.iterations)):
        all_metrics.append(asyncio.run(run_iteration(HARNESS_TEXT, Backend(args.backend))))
    build_report(all_metrics, args.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
