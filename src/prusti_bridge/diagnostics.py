"""Per-file diagnostic storage with a retention policy."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Iterable

from lsprotocol.types import Diagnostic, DiagnosticSeverity

from prusti_bridge.messages import ParsedDiagnostic, file_uri
from prusti_bridge.sinks import DiagnosticsSink

logger = logging.getLogger(__name__)

# Diagnostics mentioning this are emitted by the verifier itself.
VERIFIER_MARKER = "Prusti"

_ABORTING_RE = re.compile(r"^aborting due to (\d+ |)previous error(s|)")
_WARNINGS_EMITTED_RE = re.compile(r"^\d+ warning(s|) emitted")


class DiagnosticStore:
    def __init__(self, *, report_errors_only: bool = False) -> None:
        self.report_errors_only = report_errors_only
        self._diagnostics: dict[str, list[Diagnostic]] = {}

    def _should_report(self, parsed: ParsedDiagnostic) -> bool:
        diagnostic = parsed.diagnostic
        message = diagnostic.message
        if self.report_errors_only:
            if (
                diagnostic.severity != DiagnosticSeverity.Error
                and VERIFIER_MARKER not in message
            ):
                return False
        if _ABORTING_RE.search(message) is not None:
            return False
        if _WARNINGS_EMITTED_RE.search(message) is not None:
            return False
        return True

    def add(self, parsed: ParsedDiagnostic) -> bool:
        if not self._should_report(parsed):
            logger.info("Ignored diagnostic message: %r", parsed.diagnostic.message)
            return False
        self._diagnostics.setdefault(parsed.file_path, []).append(parsed.diagnostic)
        return True

    def add_all(self, diagnostics: Iterable[ParsedDiagnostic]) -> None:
        for parsed in diagnostics:
            self.add(parsed)

    def add_and_render(self, parsed: ParsedDiagnostic, sink: DiagnosticsSink) -> None:
        if not self.add(parsed):
            return
        sink.set(file_uri(parsed.file_path), self._diagnostics[parsed.file_path])

    def render_in(self, sink: DiagnosticsSink) -> None:
        sink.clear()
        for file_path, file_diagnostics in self._diagnostics.items():
            logger.debug("Rendering %d diagnostics at %s", len(file_diagnostics), file_path)
            sink.set(file_uri(file_path), file_diagnostics)

    def diagnostics_for(self, file_path: str) -> list[Diagnostic]:
        return list(self._diagnostics.get(file_path, ()))

    def files(self) -> list[str]:
        return list(self._diagnostics)

    def counts_by_severity(self) -> Counter[DiagnosticSeverity]:
        counts: Counter[DiagnosticSeverity] = Counter()
        for file_diagnostics in self._diagnostics.values():
            for diagnostic in file_diagnostics:
                if diagnostic.severity is not None:
                    counts[diagnostic.severity] += 1
        return counts

    def has_errors(self) -> bool:
        return self.counts_by_severity()[DiagnosticSeverity.Error] > 0

    def has_warnings(self) -> bool:
        return self.counts_by_severity()[DiagnosticSeverity.Warning] > 0

    def is_empty(self) -> bool:
        return not self._diagnostics

    def clear(self) -> list[str]:
        """Drop every diagnostic and return the files that had some."""
        cleared = list(self._diagnostics)
        self._diagnostics.clear()
        return cleared
