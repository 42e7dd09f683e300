from __future__ import annotations

import asyncio
import json
from pathlib import Path

from lsprotocol.types import Diagnostic, DiagnosticSeverity, Position, Range
from typer.testing import CliRunner

from prusti_bridge import cli
from prusti_bridge.config import BridgeConfig
from prusti_bridge.sinks import RecordingDiagnosticsSink, RecordingStatusSink, StatusText
from prusti_bridge.verification import (
    CRASH_MESSAGE,
    VerificationOutcome,
    VerificationStatus,
    VerificationTarget,
)
from tests.process_fakes import FakeProcess, FakeProcessFactory
from tests.wire_fixtures import message, span


def _diagnostic(line: int, text: str, severity: DiagnosticSeverity) -> Diagnostic:
    return Diagnostic(
        range=Range(start=Position(line=line, character=2), end=Position(line=line, character=9)),
        message=text,
        severity=severity,
    )


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(cli.app, ["--help"])
    assert result.exit_code == 0
    assert "verify" in result.output
    assert "lsp" in result.output


def test_detect_target(tmp_path: Path) -> None:
    crate = tmp_path / "crate"
    crate.mkdir()
    (crate / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
    source = tmp_path / "demo.rs"
    source.write_text("", encoding="utf-8")

    assert cli._detect_target(crate, None) is VerificationTarget.CRATE
    assert cli._detect_target(source, None) is VerificationTarget.STANDALONE_FILE
    assert cli._detect_target(crate, False) is VerificationTarget.STANDALONE_FILE
    assert cli._detect_target(source, True) is VerificationTarget.CRATE


def test_format_diagnostics() -> None:
    sink = RecordingDiagnosticsSink()
    sink.set(
        Path("/work/b.rs").as_uri(),
        [_diagnostic(0, "unused", DiagnosticSeverity.Warning)],
    )
    sink.set(
        Path("/work/a.rs").as_uri(),
        [_diagnostic(4, "assertion might fail", DiagnosticSeverity.Error)],
    )
    assert cli.format_diagnostics(sink) == [
        "/work/a.rs:5:3: error: assertion might fail",
        "/work/b.rs:1:3: warning: unused",
    ]


def test_emit_outcome_plain_and_json() -> None:
    sink = RecordingDiagnosticsSink()
    sink.set(Path("/work/a.rs").as_uri(), [_diagnostic(0, "bad", DiagnosticSeverity.Error)])
    status = RecordingStatusSink(errors=[CRASH_MESSAGE])
    outcome = VerificationOutcome(
        run_id=1,
        status=VerificationStatus.CRASH,
        text=StatusText("$(error) failed"),
        duration=None,
        counts={"error": 1},
    )

    lines: list[str] = []
    cli.emit_outcome(outcome, sink, status, echo_fn=lines.append)
    assert lines == ["/work/a.rs:1:3: error: bad", CRASH_MESSAGE, "$(error) failed"]

    lines.clear()
    cli.emit_outcome(outcome, sink, status, emit_json=True, echo_fn=lines.append)
    payload = json.loads(lines[0])
    assert payload["status"] == "crash"
    assert payload["counts"] == {"error": 1}
    assert payload["diagnostics"] == ["/work/a.rs:1:3: error: bad"]


def test_run_verify_with_running_server(tmp_path: Path) -> None:
    target = tmp_path / "demo.rs"
    target.write_text("fn main() {}\n", encoding="utf-8")
    factory = FakeProcessFactory([FakeProcess(returncode=0)])
    sink = RecordingDiagnosticsSink()

    outcome = asyncio.run(
        cli.run_verify(
            target,
            VerificationTarget.STANDALONE_FILE,
            config=BridgeConfig(prusti_home="/opt/prusti"),
            server_address="localhost:7",
            process_factory=factory,
            kill_tree=lambda proc: None,
            diagnostics_sink=sink,
        )
    )

    assert outcome is not None
    assert outcome.status is VerificationStatus.VERIFIED
    [call] = factory.calls
    assert call.command == str(Path("/opt/prusti/prusti-rustc"))
    assert call.kwargs["env"]["PRUSTI_SERVER_ADDRESS"] == "localhost:7"


def test_run_verify_starts_the_server(tmp_path: Path) -> None:
    target = tmp_path / "demo.rs"
    target.write_text("fn main() {}\n", encoding="utf-8")
    killed: list[FakeProcess] = []

    async def scenario() -> VerificationOutcome | None:
        server_proc = FakeProcess(stdout=[b"port: 6001\n"], release=asyncio.Event(), pid=1)
        verifier_proc = FakeProcess(
            stderr=[
                (json.dumps(message("oops", spans=[span(str(target))])) + "\n").encode("utf-8")
            ],
            returncode=1,
            pid=2,
        )
        factory = FakeProcessFactory([server_proc, verifier_proc])
        outcome = await cli.run_verify(
            target,
            VerificationTarget.STANDALONE_FILE,
            config=BridgeConfig(prusti_home="/opt/prusti"),
            process_factory=factory,
            kill_tree=killed.append,
        )
        assert factory.calls[0].args == ("--port", "0")
        assert factory.calls[1].kwargs["env"]["PRUSTI_SERVER_ADDRESS"] == "localhost:6001"
        assert killed == [server_proc]
        return outcome

    outcome = asyncio.run(scenario())
    assert outcome is not None
    assert outcome.status is VerificationStatus.ERRORS
    assert outcome.counts == {"error": 1}


def test_verify_command_exit_code(tmp_path: Path) -> None:
    target = tmp_path / "demo.rs"
    target.write_text("", encoding="utf-8")
    result = CliRunner().invoke(
        cli.app,
        [
            "verify",
            str(target),
            "--server-address",
            "localhost:1",
            "--root",
            str(tmp_path),
        ],
        env={"PRUSTI_BRIDGE_PRUSTI_HOME": str(tmp_path / "missing-prusti")},
    )
    # The verifier cannot be started, which is reported as a crash.
    assert result.exit_code == 2
    assert "unexpected error" in result.output
