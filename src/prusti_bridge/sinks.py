"""Output surfaces consumed by the editor layer.

The engine never talks to an editor directly; it pushes into these sinks. The
recording implementations keep everything in memory and back the CLI and the
tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Sequence

from lsprotocol.types import Diagnostic, Range


@dataclass(frozen=True)
class StatusText:
    text: str
    command: str | None = None


class DecorationStyle(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOT_VERIFIED = "not-verified"


@dataclass(frozen=True)
class Decoration:
    range: Range
    style: DecorationStyle
    time_ms: int | None = None
    cached: bool | None = None


class DiagnosticsSink(Protocol):
    def set(self, uri: str, diagnostics: Sequence[Diagnostic]) -> None:
        """Replace the diagnostics shown for ``uri``."""

    def clear(self) -> None:
        """Remove every diagnostic."""


class StatusSink(Protocol):
    def set_status(self, status: StatusText) -> None: ...

    def set_busy(self, busy: bool) -> None: ...

    def notify_error(self, text: str) -> None: ...


class DecorationSink(Protocol):
    def set_decorations(self, file_path: str, decorations: Sequence[Decoration]) -> None: ...


@dataclass
class RecordingDiagnosticsSink:
    entries: dict[str, list[Diagnostic]] = field(default_factory=dict)
    set_calls: int = 0

    def set(self, uri: str, diagnostics: Sequence[Diagnostic]) -> None:
        self.set_calls += 1
        self.entries[uri] = list(diagnostics)

    def clear(self) -> None:
        self.entries.clear()


@dataclass
class RecordingStatusSink:
    history: list[StatusText] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    busy: bool = False

    @property
    def current(self) -> StatusText | None:
        return self.history[-1] if self.history else None

    def set_status(self, status: StatusText) -> None:
        self.history.append(status)

    def set_busy(self, busy: bool) -> None:
        self.busy = busy

    def notify_error(self, text: str) -> None:
        self.errors.append(text)


@dataclass
class RecordingDecorationSink:
    decorations: dict[str, list[Decoration]] = field(default_factory=dict)

    def set_decorations(self, file_path: str, decorations: Sequence[Decoration]) -> None:
        self.decorations[file_path] = list(decorations)
