from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import typer
from lsprotocol.types import DiagnosticSeverity

from prusti_bridge.config import BridgeConfig, load_bridge_config, prusti_location
from prusti_bridge.context import BridgeContext
from prusti_bridge.process import ManagedProcess, ProcessFactory, kill_process_tree
from prusti_bridge.server_manager import PrustiServer, ServerManager
from prusti_bridge.sinks import RecordingDiagnosticsSink, RecordingStatusSink
from prusti_bridge.verification import (
    VerificationManager,
    VerificationOutcome,
    VerificationStatus,
    VerificationTarget,
)

app = typer.Typer(add_completion=False)

_EXIT_CODES = {
    VerificationStatus.VERIFIED: 0,
    VerificationStatus.ERRORS: 1,
    VerificationStatus.CRASH: 2,
}
_SERVER_START_TIMEOUT_SECONDS = 60.0


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _detect_target(path: Path, crate: bool | None) -> VerificationTarget:
    if crate is not None:
        return VerificationTarget.CRATE if crate else VerificationTarget.STANDALONE_FILE
    if path.is_dir() and (path / "Cargo.toml").exists():
        return VerificationTarget.CRATE
    return VerificationTarget.STANDALONE_FILE


def _uri_path(uri: str) -> str:
    parsed = urlparse(uri)
    return unquote(parsed.path) if parsed.scheme == "file" else uri


def format_diagnostics(sink: RecordingDiagnosticsSink) -> list[str]:
    lines: list[str] = []
    for uri in sorted(sink.entries):
        for diagnostic in sink.entries[uri]:
            severity = DiagnosticSeverity(diagnostic.severity or DiagnosticSeverity.Error)
            start = diagnostic.range.start
            lines.append(
                f"{_uri_path(uri)}:{start.line + 1}:{start.character + 1}: "
                f"{severity.name.lower()}: {diagnostic.message}"
            )
    return lines


async def run_verify(
    path: Path,
    target: VerificationTarget,
    *,
    config: BridgeConfig,
    server_address: str | None = None,
    process_factory: ProcessFactory = asyncio.create_subprocess_exec,
    kill_tree: Callable[[ManagedProcess], None] = kill_process_tree,
    diagnostics_sink: RecordingDiagnosticsSink | None = None,
    status_sink: RecordingStatusSink | None = None,
) -> VerificationOutcome | None:
    context = BridgeContext()
    diagnostics_sink = diagnostics_sink or RecordingDiagnosticsSink()
    status_sink = status_sink or RecordingStatusSink()
    location = prusti_location(config)
    manager = VerificationManager(
        context,
        diagnostics_sink,
        status_sink,
        config=config,
        process_factory=process_factory,
        kill_tree=kill_tree,
    )
    prusti_server = PrustiServer(
        ServerManager("Prusti Server", process_factory=process_factory, kill_tree=kill_tree)
    )
    try:
        if server_address is None:
            server_address = await asyncio.wait_for(
                prusti_server.ensure_ready(location, config), _SERVER_START_TIMEOUT_SECONDS
            )
        return await manager.verify(location, server_address, str(path.resolve()), target)
    finally:
        manager.dispose()
        prusti_server.stop()
        prusti_server.manager.dispose()
        context.dispose()


@app.command()
def verify(
    path: Path = typer.Argument(..., exists=True, help="Rust file or crate directory."),
    crate: Optional[bool] = typer.Option(
        None, "--crate/--file", help="Verify a crate or a standalone file (default: detect)."
    ),
    server_address: Optional[str] = typer.Option(
        None, "--server-address", help="Use a running Prusti server instead of starting one."
    ),
    errors_only: Optional[bool] = typer.Option(
        None, "--errors-only/--all-diagnostics", help="Report only errors and Prusti notes."
    ),
    root: Path = typer.Option(Path("."), "--root"),
    config_path: Optional[Path] = typer.Option(None, "--config"),
    emit_json: bool = typer.Option(False, "--json", help="Print the outcome as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Verify a crate or a standalone Rust file with Prusti."""
    _configure_logging(verbose)
    config = load_bridge_config(root=root, config_path=config_path)
    if errors_only is not None:
        config = replace(config, report_errors_only=errors_only)
    target = _detect_target(path, crate)
    diagnostics_sink = RecordingDiagnosticsSink()
    status_sink = RecordingStatusSink()
    outcome = asyncio.run(
        run_verify(
            path,
            target,
            config=config,
            server_address=server_address,
            diagnostics_sink=diagnostics_sink,
            status_sink=status_sink,
        )
    )
    if outcome is None:
        typer.echo("Verification was superseded.", err=True)
        raise typer.Exit(code=2)
    emit_outcome(outcome, diagnostics_sink, status_sink, emit_json=emit_json)
    raise typer.Exit(code=_EXIT_CODES[outcome.status])


def emit_outcome(
    outcome: VerificationOutcome,
    diagnostics_sink: RecordingDiagnosticsSink,
    status_sink: RecordingStatusSink,
    *,
    emit_json: bool = False,
    echo_fn: Callable[[str], None] = typer.echo,
) -> None:
    if emit_json:
        echo_fn(
            json.dumps(
                {
                    "status": outcome.status.value,
                    "text": outcome.text.text,
                    "counts": outcome.counts,
                    "diagnostics": format_diagnostics(diagnostics_sink),
                    "errors": status_sink.errors,
                },
                indent=2,
                sort_keys=True,
            )
        )
        return
    for line in format_diagnostics(diagnostics_sink):
        echo_fn(line)
    for error in status_sink.errors:
        echo_fn(error)
    echo_fn(outcome.text.text)


@app.command()
def lsp(
    root: Path = typer.Option(Path("."), "--root"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run the language server on stdio."""
    _configure_logging(verbose)
    from prusti_bridge import server

    server.start(root=root)


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()  # pragma: no cover
