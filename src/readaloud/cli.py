"""
Command-line interface for readaloud.

The CLI segments a text (or HTML) document, then plays it segment by segment
through the synthesis server while reading transport commands from stdin.
`--dry-run` shows the segmentation without contacting the server.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from dataclasses import fields
from pathlib import Path
from typing import Optional, Sequence

from .config import AppConfig, load_config
from .errors import BackendError, ReadAloudError
from .logging_utils import configure_logging, create_event_logger
from .playback import SoundDeviceOutput
from .preferences import PREFERENCES_FILENAME, PreferenceStore
from .provider_base import Backend
from .scheduler import (
    STATUS_AUDIO_ERROR,
    STATUS_EMPTY,
    STATUS_NO_VOICE,
    STATUS_STOPPED,
)
from .segmenter import Segmentation, segment_document, thresholds_for
from .session import ReaderSession, SessionSettings
from .synthesis_client import SynthesisClient
from .voice_catalog import READALOUD_HOME

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

COMMAND_HELP = (
    "Commands: play [n], pause, stop, next, prev, next-para, prev-para, "
    "seek n, voice ID, speed X, backend ID, rate N, quit"
)


def create_parser() -> argparse.ArgumentParser:
    """Create the top-level argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="readaloud",
        description=(
            "Read a document aloud, one segment at a time, through a local "
            "synthesis server (kokoro, piper or openai)."
        ),
    )
    text_group = parser.add_mutually_exclusive_group()
    text_group.add_argument(
        "text",
        nargs="?",
        help="Text to read. When omitted, use --file or pipe via STDIN.",
    )
    text_group.add_argument(
        "--file",
        metavar="PATH",
        help="Read the document from a UTF-8 encoded file.",
    )

    parser.add_argument(
        "--html",
        action="store_true",
        help="Treat the input as HTML and read its block-level containers.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Path to an optional configuration file (readaloud.toml).",
    )
    parser.add_argument(
        "--server",
        metavar="URL",
        help="Synthesis server base URL (default http://127.0.0.1:9090).",
    )
    parser.add_argument(
        "--backend",
        choices=[backend.value for backend in Backend],
        help="Synthesis backend.",
    )
    parser.add_argument(
        "--voice",
        help="Voice identifier or fuzzy-matched name.",
    )
    parser.add_argument(
        "--speed",
        type=float,
        help="Speaking rate multiplier (0.5 to 3.0).",
    )
    parser.add_argument(
        "--start",
        type=int,
        metavar="N",
        help="Start at segment N (1-based) instead of the saved position.",
    )
    parser.add_argument(
        "--keep-behind",
        dest="keep_behind",
        type=int,
        metavar="N",
        help="Decoded segments kept behind the current one (default 2).",
    )
    parser.add_argument(
        "--prefetch-ahead",
        dest="prefetch_ahead",
        type=int,
        metavar="N",
        help="Segments synthesized ahead of the current one (default 2).",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Generate tones locally instead of calling the synthesis server.",
    )
    parser.add_argument(
        "--list-voices",
        action="store_true",
        help="List voices for the selected backend and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the segmentation without contacting the server.",
    )
    parser.add_argument(
        "--no-resume",
        action="store_true",
        help="Ignore the saved position for long documents.",
    )
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Emit scheduler events as JSON lines.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"readaloud {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (repeatable).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential log output.",
    )
    return parser


class ConsoleSink:
    """Prints position and status changes; tracks when playback went idle."""

    def __init__(self, segmentation: Segmentation, stream=None) -> None:
        self.segmentation = segmentation
        self.stream = stream
        self.idle = asyncio.Event()
        self.last_status: str | None = None

    @property
    def exit_code(self) -> int:
        if self.last_status is None:
            return 0
        if self.last_status.startswith(STATUS_AUDIO_ERROR):
            return 4
        if self.last_status == STATUS_NO_VOICE:
            return 3
        return 0

    def on_position_changed(self, index: int) -> None:
        total = len(self.segmentation)
        self._print(f"[{index + 1}/{total}] {self.segmentation.texts[index]}")

    def on_status_changed(self, text: str) -> None:
        self._print(f"-- {text}")
        self.last_status = text
        if text in (STATUS_STOPPED, STATUS_NO_VOICE, STATUS_EMPTY) or text.startswith(
            STATUS_AUDIO_ERROR
        ):
            self.idle.set()

    def on_finished(self) -> None:
        self.idle.set()

    def _print(self, line: str) -> None:
        print(line, file=self.stream, flush=True)


def _resolve_input_text(args: argparse.Namespace) -> str:
    if args.text:
        return args.text

    if args.file:
        path = Path(args.file)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SystemExit(f"Failed to read file '{path}': {exc}") from exc

    if not sys.stdin.isatty():
        try:
            data = sys.stdin.read().strip()
        except OSError:
            logger.debug("stdin read failed; returning empty input.")
            return ""
        if data:
            return data

    return ""


def _document_id(args: argparse.Namespace, text: str) -> str:
    if args.file:
        return f"file:{Path(args.file).expanduser().resolve()}"
    return text


def _explicit(config: AppConfig, name: str):
    """Return a config value only when it differs from the built-in default."""
    default = {f.name: f.default for f in fields(AppConfig)}[name]
    value = getattr(config, name)
    return None if value == default else value


def _settle_playback(
    args: argparse.Namespace, config: AppConfig, store: PreferenceStore
) -> tuple[Backend, float]:
    """Backend and speed for this run: explicit settings first, then stored preferences."""
    prefs = store.get()
    backend = Backend(args.backend or _explicit(config, "backend") or prefs.backend)
    speed = args.speed if args.speed is not None else _explicit(config, "speed")
    return backend, float(speed if speed is not None else prefs.speed)


def _state_dir(config: AppConfig) -> Path:
    return Path(config.state_dir).expanduser() if config.state_dir else READALOUD_HOME


def _create_client(config: AppConfig) -> SynthesisClient:
    return SynthesisClient(
        base_url=config.server_url,
        api_token=config.api_token,
        sample_rate=config.sample_rate,
        timeout=max(0.1, config.timeout_ms / 1000.0),
        simulate=config.simulate,
    )


def _create_output(config: AppConfig) -> SoundDeviceOutput:
    device: int | str | None = config.device
    if isinstance(device, str) and device.isdigit():
        device = int(device)
    return SoundDeviceOutput(device=device)


def _render_voice_list(client: SynthesisClient, backend: Backend, store: PreferenceStore) -> None:
    voices = client.list_voices(backend)
    if not voices:
        print(f"No voices available for {backend.value}.")
        return

    ratings = store.get().voice_ratings
    print(f"Available voices ({backend.value}):")
    for voice in voices:
        rating = ratings.get(voice)
        suffix = f" (rated {rating}/5)" if rating else ""
        print(f"- {voice}{suffix}")


def _render_dry_run(
    segmentation: Segmentation, backend: Backend, speed: float, voice: str | None
) -> None:
    thresholds = thresholds_for(backend)
    print("Dry run mode. No synthesis performed.")
    print(f"Backend: {backend.value} | Voice: {voice or '(default)'} | Speed: {speed}")
    print(
        f"Segments: {len(segmentation)} total "
        f"(min_chars={thresholds.min_chars}, max_chars={thresholds.max_chars})"
    )
    for segment in segmentation.segments:
        print(
            f"  {segment.index + 1}. para={segment.source.container + 1} "
            f"length={len(segment.text)} | {segment.text}"
        )


def _start_command_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    def _pump() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip())
        loop.call_soon_threadsafe(queue.put_nowait, None)

    thread = threading.Thread(target=_pump, name="readaloud-stdin", daemon=True)
    thread.start()


async def _dispatch(session: ReaderSession, line: str) -> bool:
    """Run one interactive command; returns False when the user asked to quit."""
    parts = line.split()
    if not parts:
        return True
    command, rest = parts[0].lower(), parts[1:]
    argument = rest[0] if rest else None

    try:
        if command in ("quit", "exit", "q"):
            return False
        if command == "play":
            session.play(int(argument) - 1 if argument else None)
        elif command == "pause":
            session.pause()
        elif command == "stop":
            session.stop()
        elif command == "next":
            session.next_segment()
        elif command == "prev":
            session.prev_segment()
        elif command == "next-para":
            session.next_paragraph()
        elif command == "prev-para":
            session.prev_paragraph()
        elif command == "seek" and argument:
            session.seek(int(argument) - 1)
        elif command == "voice" and argument:
            print(f"Voice: {session.set_voice(argument)}")
        elif command == "speed" and argument:
            print(f"Speed: {session.set_speed(float(argument))}")
        elif command == "backend" and argument:
            voice = await session.set_backend(argument)
            print(f"Backend: {argument} | Voice: {voice}")
        elif command == "rate" and argument:
            session.rate_voice(int(argument))
            print(f"Rated {argument}/5")
        else:
            print(COMMAND_HELP)
    except (ValueError, ReadAloudError) as exc:
        print(f"readaloud: {exc}")
    return True


async def _run_session(
    session: ReaderSession,
    sink: ConsoleSink,
    args: argparse.Namespace,
    config: AppConfig,
    *,
    backend: Backend,
    speed: float,
    interactive: bool,
) -> int:
    try:
        started = await session.start(
            backend=backend,
            voice=config.voice,
            speed=speed,
            resume=not args.no_resume and args.start is None,
        )
        if not started:
            return 2 if not len(session.segmentation) else 3

        if args.start is not None:
            session.seek(args.start - 1)
        session.play()

        if not interactive:
            await sink.idle.wait()
        else:
            print(COMMAND_HELP)
            queue: asyncio.Queue[str | None] = asyncio.Queue()
            _start_command_reader(asyncio.get_running_loop(), queue)
            while True:
                line = await queue.get()
                if line is None or not await _dispatch(session, line):
                    break
    except (ValueError, ReadAloudError) as exc:
        logger.error("readaloud: %s", exc)
        print(f"readaloud: {exc}")
        return 2
    finally:
        await session.close()

    return sink.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point invoked by `python -m readaloud` or console scripts."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose, args.quiet)
    logger.info("readaloud starting up.")
    try:
        config = load_config(args)
    except ValueError as exc:
        print(f"readaloud: {exc}")
        return 2
    logger.debug("Loaded configuration: %s", config)

    store = PreferenceStore(_state_dir(config) / PREFERENCES_FILENAME)
    backend, speed = _settle_playback(args, config, store)

    if args.list_voices:
        client = _create_client(config)
        try:
            client.connect()
            _render_voice_list(client, backend, store)
        except BackendError as exc:
            logger.error("Voice listing failed: %s", exc)
            print(f"readaloud: could not list voices ({exc})")
            return 3
        finally:
            client.close()
        return 0

    interactive = sys.stdin.isatty()
    text = _resolve_input_text(args)
    if not text:
        parser.print_help()
        return 2

    segmentation = segment_document(text, backend=backend, html=args.html)

    if args.dry_run:
        _render_dry_run(segmentation, backend, speed, config.voice or store.get().voice)
        return 0

    client = _create_client(config)
    sink = ConsoleSink(segmentation)
    session = ReaderSession(
        _document_id(args, text),
        segmentation,
        client,
        _create_output(config),
        store=store,
        sink=sink,
        settings=SessionSettings.from_app_config(config),
        event_logger=create_event_logger(logging.getLogger("readaloud.events"), config.log_format),
    )

    try:
        client.connect()
        return asyncio.run(
            _run_session(
                session, sink, args, config, backend=backend, speed=speed, interactive=interactive
            )
        )
    except KeyboardInterrupt:
        return 0
    finally:
        client.close()


if __name__ == "__main__":  # pragma: no cover - allows `python cli.py`
    raise SystemExit(main())
