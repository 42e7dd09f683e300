from __future__ import annotations

from pathlib import Path

import pytest
from lsprotocol.types import Diagnostic, DiagnosticSeverity

from prusti_bridge.diagnostics import DiagnosticStore
from prusti_bridge.messages import ParsedDiagnostic
from prusti_bridge.ranges import dummy_range
from prusti_bridge.sinks import RecordingDiagnosticsSink


def _parsed(
    text: str,
    severity: DiagnosticSeverity = DiagnosticSeverity.Error,
    file_path: str = "/work/demo.rs",
) -> ParsedDiagnostic:
    return ParsedDiagnostic(
        file_path=file_path,
        diagnostic=Diagnostic(range=dummy_range(), message=text, severity=severity),
    )


@pytest.mark.parametrize(
    "text",
    [
        "aborting due to previous error",
        "aborting due to 3 previous errors",
        "aborting due to previous errors",
        "2 warnings emitted",
        "1 warning emitted",
    ],
)
def test_compiler_summaries_are_dropped(text: str) -> None:
    store = DiagnosticStore()
    assert store.add(_parsed(text)) is False
    assert store.is_empty()


def test_errors_only_keeps_errors_and_verifier_notes() -> None:
    store = DiagnosticStore(report_errors_only=True)
    assert store.add(_parsed("unused variable", DiagnosticSeverity.Warning)) is False
    assert store.add(_parsed("Prusti: verification error", DiagnosticSeverity.Information))
    assert store.add(_parsed("type mismatch"))
    assert [d.message for d in store.diagnostics_for("/work/demo.rs")] == [
        "Prusti: verification error",
        "type mismatch",
    ]


def test_warnings_are_kept_by_default() -> None:
    store = DiagnosticStore()
    assert store.add(_parsed("unused variable", DiagnosticSeverity.Warning))
    assert store.has_warnings()
    assert not store.has_errors()


def test_add_and_render_publishes_the_full_file_list() -> None:
    store = DiagnosticStore()
    sink = RecordingDiagnosticsSink()
    store.add_and_render(_parsed("first"), sink)
    store.add_and_render(_parsed("second"), sink)
    store.add_and_render(_parsed("aborting due to 2 previous errors"), sink)

    uri = Path("/work/demo.rs").as_uri()
    assert [d.message for d in sink.entries[uri]] == ["first", "second"]
    assert sink.set_calls == 2


def test_render_in_replaces_previous_sink_contents() -> None:
    sink = RecordingDiagnosticsSink()
    sink.set(Path("/work/stale.rs").as_uri(), [_parsed("old").diagnostic])
    store = DiagnosticStore()
    store.add(_parsed("a", file_path="/work/a.rs"))
    store.add(_parsed("b", DiagnosticSeverity.Warning, file_path="/work/b.rs"))

    store.render_in(sink)

    assert sorted(sink.entries) == sorted(
        [Path("/work/a.rs").as_uri(), Path("/work/b.rs").as_uri()]
    )


def test_counts_and_clear() -> None:
    store = DiagnosticStore()
    store.add_all(
        [
            _parsed("e1"),
            _parsed("e2", file_path="/work/other.rs"),
            _parsed("w1", DiagnosticSeverity.Warning),
            _parsed("h1", DiagnosticSeverity.Hint),
        ]
    )
    counts = store.counts_by_severity()
    assert counts[DiagnosticSeverity.Error] == 2
    assert counts[DiagnosticSeverity.Warning] == 1
    assert counts[DiagnosticSeverity.Hint] == 1
    assert sorted(store.files()) == ["/work/demo.rs", "/work/other.rs"]

    assert sorted(store.clear()) == ["/work/demo.rs", "/work/other.rs"]
    assert store.is_empty()
    assert not store.has_errors()
