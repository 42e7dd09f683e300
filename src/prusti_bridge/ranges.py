"""Source range helpers on top of the LSP range type.

Positions are ordered lexicographically by ``(line, character)``. Ranges are
not hashable, so indexes key them by :func:`range_key`.
"""

from __future__ import annotations

from typing import Iterable, TypeAlias, TypeVar

from lsprotocol.types import Position, Range

T = TypeVar("T")

RangeKey: TypeAlias = tuple[int, int, int, int]

# Sentinel column used to reach the end of a line.
LINE_END_CHARACTER = 2**31 - 1


def dummy_range() -> Range:
    return Range(start=Position(line=0, character=0), end=Position(line=0, character=0))


def is_dummy(value: Range) -> bool:
    return range_key(value) == (0, 0, 0, 0)


def span_range(line_start: int, column_start: int, line_end: int, column_end: int) -> Range:
    """Convert 1-based wire coordinates into a 0-based range."""
    return Range(
        start=Position(line=line_start - 1, character=column_start - 1),
        end=Position(line=line_end - 1, character=column_end - 1),
    )


def _pos(value: Position) -> tuple[int, int]:
    return (value.line, value.character)


def union(a: Range, b: Range) -> Range:
    start = min(_pos(a.start), _pos(b.start))
    end = max(_pos(a.end), _pos(b.end))
    return Range(
        start=Position(line=start[0], character=start[1]),
        end=Position(line=end[0], character=end[1]),
    )


def contains(outer: Range, inner: Range) -> bool:
    return _pos(outer.start) <= _pos(inner.start) and _pos(inner.end) <= _pos(outer.end)


def contains_position(outer: Range, position: Position) -> bool:
    return _pos(outer.start) <= _pos(position) <= _pos(outer.end)


def ranges_equal(a: Range, b: Range) -> bool:
    return range_key(a) == range_key(b)


def range_key(value: Range) -> RangeKey:
    return (value.start.line, value.start.character, value.end.line, value.end.character)


def range_from_key(key: RangeKey) -> Range:
    start_line, start_character, end_line, end_character = key
    return Range(
        start=Position(line=start_line, character=start_character),
        end=Position(line=end_line, character=end_character),
    )


def full_line_range(value: Range) -> Range:
    """Range from ``value.start`` to the end of its first line."""
    return Range(
        start=Position(line=value.start.line, character=value.start.character),
        end=Position(line=value.start.line, character=LINE_END_CHARACTER),
    )


def innermost_match(
    candidates: Iterable[tuple[Range, T]],
    position: Position,
) -> tuple[Range, T] | None:
    """Return the smallest candidate range containing ``position``.

    A candidate replaces the current best when it is contained in it, so for
    equal ranges the last one in iteration order wins.
    """
    best: tuple[Range, T] | None = None
    for candidate_range, payload in candidates:
        if not contains_position(candidate_range, position):
            continue
        if best is None or contains(best[0], candidate_range):
            best = (candidate_range, payload)
    return best
