"""Locate ``#[ ... #]`` inline Typst blocks in plain text.

The scanner keeps at most one block open at a time. Unmatched or malformed
nesting is silently tolerated, not rejected: a second opener inside an open
block is ignored (first opener wins) and a closer with no open block is
ignored. A stray opener therefore swallows every later block until some
closer appears.

A marker preceded by a backslash is never a delimiter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

ESCAPE_CHAR = "\\"
MARKER_CHAR = "#"
OPEN_BRACKET = "["
CLOSE_BRACKET = "]"
MARKER_LEN = 2


@dataclass(frozen=True, order=True)
class Span:
    """A block region. ``end`` is one past the closing marker."""
    begin: int
    end: int

    def distance_to(self, pos: int) -> int:
        if pos < self.begin:
            return self.begin - pos
        if pos < self.end:
            return 0
        return pos - self.end

    def overlaps(self, begin: int, end: int) -> bool:
        """True when ``[begin, end)`` intersects this span.

        An empty range matches only when the point lies strictly inside.
        """
        if begin == end:
            return self.begin < begin < self.end
        return self.begin < end and begin < self.end

    def interior(self) -> tuple[int, int]:
        """The span shrunk by one character at each side."""
        return self.begin + 1, self.end - 1

    def shifted(self, delta: int) -> "Span":
        return Span(self.begin + delta, self.end + delta)

    def text(self, document: str) -> str:
        return document[self.begin:self.end]

    def inner(self, document: str) -> str:
        return strip_markers(self.text(document))


def strip_markers(fragment: str) -> str:
    """Drop the two-character opening and closing markers from a raw fragment."""
    if len(fragment) < 2 * MARKER_LEN:
        return ""
    return fragment[MARKER_LEN:-MARKER_LEN]


def _is_marker(text: str, pos: int, bracket: str) -> bool:
    if text[pos] != MARKER_CHAR or pos + 1 >= len(text) or text[pos + 1] != bracket:
        return False
    return pos == 0 or text[pos - 1] != ESCAPE_CHAR


def iter_spans(text: str) -> Iterator[Span]:
    """Yield spans in scan order. Holds no state between calls."""
    open_at: Optional[int] = None
    for pos in range(len(text) - 1):
        if open_at is None:
            if _is_marker(text, pos, OPEN_BRACKET):
                open_at = pos
        elif _is_marker(text, pos, CLOSE_BRACKET):
            yield Span(open_at, pos + MARKER_LEN)
            open_at = None


def scan(text: str) -> list[Span]:
    return list(iter_spans(text))


def select_nearest(spans: Iterable[Span], pos: int) -> Optional[Span]:
    """Return the span closest to ``pos``.

    A cursor inside a span has distance zero. Ties go to the earliest span
    in ``spans``. Returns None for an empty sequence.
    """
    best: Optional[Span] = None
    best_distance = 0
    for span in spans:
        distance = span.distance_to(pos)
        if best is None or distance < best_distance:
            best = span
            best_distance = distance
            if distance == 0:
                # Nothing beats zero and later zeros lose the tie.
                break
    return best


def nearest_block(text: str, pos: int) -> Optional[Span]:
    return select_nearest(iter_spans(text), pos)
