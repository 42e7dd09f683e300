"""Range-indexed annotations attached to source files.

One generic structure backs both annotation kinds streamed by the verifier:
quantifier instantiation counts per method and the triggers chosen for a
quantifier. Entries are keyed by the value of their range, since ranges are
rebuilt from the wire for every event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Mapping, TypeVar

from lsprotocol.types import Position, Range

from prusti_bridge.ranges import RangeKey, innermost_match, range_from_key, range_key


P = TypeVar("P")
D = TypeVar("D")


@dataclass(frozen=True)
class Annotation:
    range: Range
    label: str
    tooltip: str

    @property
    def position(self) -> Position:
        return self.range.start


class RangeIndex(Generic[P, D]):
    """``{file -> {range -> payload}}`` with a per-file rendering cache.

    ``merge`` folds an update delta into the existing payload (``None`` when
    the range is new). ``describe`` renders the hover text of one entry and
    ``label`` its short inline form. ``changed`` is set by every mutation so
    that the host knows when to ask the editor for fresh inlay hints.
    """

    def __init__(
        self,
        *,
        merge: Callable[[P | None, D], P],
        describe: Callable[[P], str],
        label: Callable[[P], str],
    ) -> None:
        self._merge = merge
        self._describe = describe
        self._label = label
        self._entries: dict[str, dict[RangeKey, P]] = {}
        self._cache: dict[str, list[Annotation]] = {}
        self._dirty: set[str] = set()
        self.changed = False

    def update(self, file_name: str, range_: Range, delta: D) -> None:
        entries = self._entries.setdefault(file_name, {})
        key = range_key(range_)
        entries[key] = self._merge(entries.get(key), delta)
        self._dirty.add(file_name)
        self.changed = True

    def entries(self, file_name: str) -> Mapping[RangeKey, P]:
        return dict(self._entries.get(file_name, {}))

    def files(self) -> list[str]:
        return list(self._entries)

    def lookup(self, file_name: str, position: Position) -> tuple[Range, P] | None:
        entries = self._entries.get(file_name)
        if not entries:
            return None
        return innermost_match(
            ((range_from_key(key), payload) for key, payload in entries.items()),
            position,
        )

    def hover_text(self, file_name: str, position: Position) -> str | None:
        match = self.lookup(file_name, position)
        if match is None:
            return None
        return self._describe(match[1])

    def render(self, file_name: str) -> list[Annotation]:
        if file_name in self._cache and file_name not in self._dirty:
            return list(self._cache[file_name])
        annotations = [
            Annotation(
                range=range_from_key(key),
                label=self._label(payload),
                tooltip=self._describe(payload),
            )
            for key, payload in self._entries.get(file_name, {}).items()
        ]
        self._cache[file_name] = annotations
        self._dirty.discard(file_name)
        return list(annotations)

    def take_changed(self) -> bool:
        """Return whether any file changed since the last call, and reset the flag."""
        changed = self.changed
        self.changed = False
        return changed

    def clear_file(self, file_name: str) -> None:
        if self._entries.pop(file_name, None):
            self.changed = True
        self._cache.pop(file_name, None)
        self._dirty.discard(file_name)

    def clear(self) -> None:
        self._entries.clear()
        self._cache.clear()
        self._dirty.clear()
        self.changed = False


# Quantifier instantiations: {method -> count}. Counts on the wire are
# cumulative, so a newer event for the same method overwrites the older one.


def _merge_instantiations(
    current: dict[str, int] | None, delta: tuple[str, int]
) -> dict[str, int]:
    method, instantiations = delta
    merged = dict(current or {})
    merged[method] = instantiations
    return merged


def _describe_instantiations(payload: dict[str, int]) -> str:
    per_method = ", ".join(f"{method}: {count}" for method, count in payload.items())
    return f"Quantifier instantiations per method: {per_method}"


def _label_instantiations(payload: dict[str, int]) -> str:
    return f"QI: {sum(payload.values())}"


class QuantifierInstantiationsIndex(RangeIndex[dict[str, int], tuple[str, int]]):
    def __init__(self) -> None:
        super().__init__(
            merge=_merge_instantiations,
            describe=_describe_instantiations,
            label=_label_instantiations,
        )


def _merge_triggers(_current: tuple[str, str] | None, delta: tuple[str, str]) -> tuple[str, str]:
    return delta


def _describe_triggers(payload: tuple[str, str]) -> str:
    quantifier, triggers = payload
    return f"Viper quantifier: {quantifier}\nViper triggers: {triggers}"


def _label_triggers(payload: tuple[str, str]) -> str:
    return f"triggers: {payload[1]}"


class QuantifierTriggersIndex(RangeIndex[tuple[str, str], tuple[str, str]]):
    def __init__(self) -> None:
        super().__init__(
            merge=_merge_triggers,
            describe=_describe_triggers,
            label=_label_triggers,
        )
