"""
Document segmentation for readaloud.

`segment` walks block-level containers in document order, splits each one on
sentence boundaries (ignoring abbreviations such as "Dr." or "U.S."), coalesces
short sentences up to a backend-dependent minimum, and splits overlong pieces
once near their midpoint. Every segment keeps a `(start, end)` offset into its
container so a consumer can recompute the exact range later.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from bs4 import BeautifulSoup

from .provider_base import Backend

SENTENCE_END_REGEX = re.compile(r"[.!?…]+[\"'”’)\]]*(?=\s|$)")
CLAUSE_BREAK_REGEX = re.compile(r"[,;—–]")
PARAGRAPH_SPLIT_REGEX = re.compile(r"\n\s*\n")

ABBREVIATIONS = (
    # titles
    "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "gen", "gov", "sen", "rep", "rev",
    "capt", "col", "lt", "sgt", "hon",
    # units and latin shorthand
    "approx", "vs", "etc", "e\\.g", "i\\.e", "cf", "al", "fig", "vol", "pp", "ca",
    "km", "kg", "cm", "mm", "ft", "lb", "lbs", "oz", "mi", "hr", "sec",
    # months
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct", "nov", "dec",
)
KNOWN_ABBREVIATION_REGEX = re.compile(
    r"(?:^|[\s(\"'“])(?:%s)\.$" % "|".join(ABBREVIATIONS), re.IGNORECASE
)
INITIAL_REGEX = re.compile(r"(?:^|[\s(.\"'“])[A-Z]\.$")

BLOCK_TAGS = [
    "p", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "pre", "figcaption", "dt", "dd", "td", "th",
]
NON_CONTENT_TAGS = ["script", "style", "noscript", "nav", "template"]


@dataclass(frozen=True)
class Thresholds:
    min_chars: int
    max_chars: int
    split_window: int = 60


BACKEND_THRESHOLDS: dict[Backend, Thresholds] = {
    Backend.PIPER: Thresholds(min_chars=30, max_chars=240, split_window=50),
    Backend.KOKORO: Thresholds(min_chars=80, max_chars=320, split_window=60),
    Backend.OPENAI: Thresholds(min_chars=150, max_chars=600, split_window=80),
}


@dataclass(frozen=True)
class Container:
    """One block-level text container."""

    text: str


@dataclass(frozen=True)
class SegmentMeta:
    container: int
    start: int
    end: int


@dataclass(frozen=True)
class Segment:
    index: int
    text: str
    source: SegmentMeta


@dataclass
class Segmentation:
    texts: List[str] = field(default_factory=list)
    meta: List[SegmentMeta] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.texts)

    @property
    def segments(self) -> list[Segment]:
        return [
            Segment(index=i, text=text, source=meta)
            for i, (text, meta) in enumerate(zip(self.texts, self.meta))
        ]

    def container_of(self, index: int) -> int:
        return self.meta[index].container


def thresholds_for(backend: Backend | str) -> Thresholds:
    return BACKEND_THRESHOLDS[Backend(backend)]


def containers_from_text(text: str) -> list[Container]:
    """Treat blank-line separated paragraphs as containers."""
    containers = []
    for paragraph in PARAGRAPH_SPLIT_REGEX.split(text):
        paragraph = paragraph.strip()
        if paragraph:
            containers.append(Container(paragraph))
    return containers


def containers_from_html(markup: str) -> list[Container]:
    """
    Collect block containers from HTML in document order.

    A block nested inside another counted block is skipped because its text
    is already included in the ancestor.
    """

    soup = BeautifulSoup(markup, "html.parser")
    for node in soup.find_all(NON_CONTENT_TAGS):
        node.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")

    containers = []
    for node in soup.find_all(BLOCK_TAGS):
        if node.find_parent(BLOCK_TAGS) is not None:
            continue
        text = _normalize_whitespace(node.get_text())
        if text:
            containers.append(Container(text))
    return containers


def split_sentences(text: str) -> list[tuple[int, int]]:
    """Return trimmed `(start, end)` spans of the sentences in `text`."""
    spans: list[tuple[int, int]] = []
    start = 0
    for match in SENTENCE_END_REGEX.finditer(text):
        if _ends_with_abbreviation(text, match):
            continue
        span = _trim(text, start, match.end())
        if span is not None:
            spans.append(span)
        start = match.end()

    tail = _trim(text, start, len(text))
    if tail is not None:
        spans.append(tail)
    return spans


def segment(containers: Sequence[Container], thresholds: Thresholds) -> Segmentation:
    result = Segmentation()
    for container_index, container in enumerate(containers):
        for start, end in _segment_container(container.text, thresholds):
            text = _normalize_whitespace(container.text[start:end])
            if not text:
                continue
            result.texts.append(text)
            result.meta.append(SegmentMeta(container_index, start, end))
    return result


def segment_document(text: str, *, backend: Backend | str, html: bool = False) -> Segmentation:
    containers = containers_from_html(text) if html else containers_from_text(text)
    return segment(containers, thresholds_for(backend))


# ---------------------------------------------------------------------- #
# Internal helpers


def _normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def _trim(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start == end:
        return None
    return start, end


def _ends_with_abbreviation(text: str, match: re.Match[str]) -> bool:
    if match.group() != ".":
        return False
    head = text[: match.end()]
    return bool(KNOWN_ABBREVIATION_REGEX.search(head) or INITIAL_REGEX.search(head))


def _segment_container(text: str, thresholds: Thresholds) -> list[tuple[int, int]]:
    spans = split_sentences(text)
    if not spans:
        return []

    if len(text.strip()) < thresholds.min_chars:
        pieces = [(spans[0][0], spans[-1][1])]
    else:
        pieces = _coalesce(spans, thresholds.min_chars)

    result: list[tuple[int, int]] = []
    for start, end in pieces:
        result.extend(_split_long(text, start, end, thresholds))
    return result


def _coalesce(spans: Iterable[tuple[int, int]], min_chars: int) -> list[tuple[int, int]]:
    pieces: list[tuple[int, int]] = []
    current_start: int | None = None
    last_end = 0
    for start, end in spans:
        if current_start is None:
            current_start = start
        last_end = end
        if end - current_start >= min_chars:
            pieces.append((current_start, end))
            current_start = None
    if current_start is not None:
        # a short leftover joins the piece before it
        if pieces:
            pieces[-1] = (pieces[-1][0], last_end)
        else:
            pieces.append((current_start, last_end))
    return pieces


def _split_long(text: str, start: int, end: int, thresholds: Thresholds) -> list[tuple[int, int]]:
    if end - start <= thresholds.max_chars:
        return [(start, end)]

    midpoint = start + (end - start) // 2
    low = max(start + 1, midpoint - thresholds.split_window)
    high = min(end - 1, midpoint + thresholds.split_window)

    best: int | None = None
    for match in CLAUSE_BREAK_REGEX.finditer(text, low, high):
        position = match.start()
        if best is None or abs(position - midpoint) < abs(best - midpoint):
            best = position
    if best is None:
        return [(start, end)]

    halves = [_trim(text, start, best + 1), _trim(text, best + 1, end)]
    if any(half is None for half in halves):
        return [(start, end)]
    return [half for half in halves if half is not None]
