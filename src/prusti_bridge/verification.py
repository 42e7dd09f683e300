"""Verification runs: spawning the verifier and rendering what it reports.

Runs may overlap. Starting a run kills the processes of earlier runs on a
best-effort basis and every run is tagged with an increasing id; output and
results of a run that is no longer the latest are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Literal

from lsprotocol.types import DiagnosticSeverity
from pydantic import ValidationError

from prusti_bridge.config import BridgeConfig, PrustiLocation, verifier_env
from prusti_bridge.context import BridgeContext, VerificationResult
from prusti_bridge.diagnostics import DiagnosticStore
from prusti_bridge.display import display_results
from prusti_bridge.messages import (
    COMPILER_INFO,
    QUANTIFIER_CHOSEN_TRIGGERS,
    QUANTIFIER_INSTANTIATIONS,
    QUANTIFIER_INSTANTIATIONS_LEGACY,
    VERIFICATION_RESULT,
    ParseContext,
    TargetMode,
    call_site_span,
    decode_line,
    parse_message,
    resolve_file_path,
    side_channel_prefix,
    span_to_range,
    translate,
)
from prusti_bridge.process import (
    KillFunction,
    LineBuffer,
    ManagedProcess,
    ProcessFactory,
    kill_process_tree,
    spawn,
)
from prusti_bridge.schema import (
    CompilerInfoPayload,
    LegacyQuantifierInstantiationsPayload,
    Message,
    QuantifierChosenTriggersPayload,
    QuantifierInstantiationsPayload,
    VerificationResultPayload,
)
from prusti_bridge.sinks import DecorationSink, DiagnosticsSink, StatusSink, StatusText

logger = logging.getLogger(__name__)

CRASH_MESSAGE = (
    "Prusti encountered an unexpected error. "
    "We would appreciate a [bug report](https://github.com/viperproject/prusti-dev/issues/new). "
    "See the log for more details."
)
SHOW_LOG_COMMAND = "workbench.action.output.toggleOutput"
SHOW_PROBLEMS_COMMAND = "workbench.action.problems.focus"

_INTERNAL_COMPILER_ERROR_RE = re.compile(r"error: internal compiler error")
_PANIC_RE = re.compile(r"^thread '.*' panicked at", re.MULTILINE)


class VerificationTarget(str, Enum):
    STANDALONE_FILE = "file"
    CRATE = "crate"


class VerificationStatus(str, Enum):
    CRASH = "crash"
    VERIFIED = "verified"
    ERRORS = "errors"


def classify_exit(code: int | None, stderr: str) -> VerificationStatus:
    """Map the verifier's exit to a status; crash signatures in stderr win."""
    if code == 0:
        status = VerificationStatus.VERIFIED
    elif code in (1, 101):
        status = VerificationStatus.ERRORS
    else:
        status = VerificationStatus.CRASH
    if _INTERNAL_COMPILER_ERROR_RE.search(stderr) is not None:
        status = VerificationStatus.CRASH
    if _PANIC_RE.search(stderr) is not None:
        status = VerificationStatus.CRASH
    return status


@dataclass(frozen=True)
class Invocation:
    command: str
    args: tuple[str, ...]
    cwd: str
    env: dict[str, str]
    json_stream: Literal["stdout", "stderr"]
    parse_context: ParseContext


def build_invocation(
    prusti: PrustiLocation,
    config: BridgeConfig,
    server_address: str,
    target_path: str,
    target: VerificationTarget,
) -> Invocation:
    env = verifier_env(config, server_address=server_address)
    env["PRUSTI_SHOW_IDE_INFO"] = "true"
    if target is VerificationTarget.CRATE:
        return Invocation(
            command=prusti.cargo_prusti,
            args=("--message-format=json", *config.extra_cargo_prusti_args),
            cwd=target_path,
            env=env,
            json_stream="stdout",
            parse_context=ParseContext(
                root_path=target_path,
                mode=TargetMode.CRATE,
                default_file_path=target_path,
            ),
        )
    return Invocation(
        command=prusti.prusti_rustc,
        args=(
            "--crate-type=lib",
            "--error-format=json",
            target_path,
            *config.extra_prusti_rustc_args,
        ),
        cwd=str(Path(target_path).parent),
        env=env,
        json_stream="stderr",
        parse_context=ParseContext(
            root_path=str(Path(target_path).parent),
            mode=TargetMode.STANDALONE,
            default_file_path=target_path,
        ),
    )


def remove_diagnostic_metadata(root_path: str) -> None:
    """Delete the crate's ``.rmeta`` files so that cargo re-reports lib warnings."""
    for rmeta in Path(root_path, "target", "debug").glob("*.rmeta"):
        try:
            rmeta.unlink()
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", rmeta, exc)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def status_text(
    *,
    crashed: bool,
    store: DiagnosticStore,
    target: VerificationTarget,
    name: str,
    duration: float | None,
) -> StatusText:
    subject = f"{target.value} '{name}'"
    elapsed = f"{duration:.1f} s" if duration is not None else "unknown duration"
    if crashed:
        return StatusText(
            f"$(error) Verification of {subject} failed with an unexpected error",
            SHOW_LOG_COMMAND,
        )
    counts = store.counts_by_severity()
    if store.has_errors():
        errors = _plural(counts[DiagnosticSeverity.Error], "error")
        return StatusText(
            f"$(error) Verification of {subject} failed with {errors} ({elapsed})",
            SHOW_PROBLEMS_COMMAND,
        )
    if store.has_warnings():
        warnings = _plural(counts[DiagnosticSeverity.Warning], "warning")
        return StatusText(
            f"$(warning) Verification of {subject} succeeded with {warnings} ({elapsed})",
            SHOW_PROBLEMS_COMMAND,
        )
    return StatusText(f"$(check) Verification of {subject} succeeded ({elapsed})")


@dataclass(frozen=True)
class VerificationOutcome:
    run_id: int
    status: VerificationStatus
    text: StatusText
    duration: float | None
    counts: dict[str, int] = field(default_factory=dict)


class VerificationManager:
    def __init__(
        self,
        context: BridgeContext,
        diagnostics_sink: DiagnosticsSink,
        status_sink: StatusSink,
        *,
        config: BridgeConfig | None = None,
        decoration_sink: DecorationSink | None = None,
        process_factory: ProcessFactory = asyncio.create_subprocess_exec,
        kill_tree: Callable[[ManagedProcess], None] = kill_process_tree,
    ) -> None:
        self.context = context
        self.diagnostics_sink = diagnostics_sink
        self.status_sink = status_sink
        self.decoration_sink = decoration_sink
        self.config = config or BridgeConfig()
        self._process_factory = process_factory
        self._kill_tree = kill_tree
        self._destructors: set[KillFunction] = set()
        self.run_count = 0
        self.diagnostics = DiagnosticStore(report_errors_only=self.config.report_errors_only)
        # Files that received side-channel events since the last run started.
        self._annotated_files: set[str] = set()

    def in_progress(self) -> int:
        return len(self._destructors)

    def kill_all(self) -> None:
        logger.info("Killing %d processes.", len(self._destructors))
        for kill in list(self._destructors):
            kill()

    def dispose(self) -> None:
        logger.info("Dispose VerificationManager")
        self.kill_all()

    def _forget_previous_run(self) -> set[str]:
        cleared = set(self.diagnostics.clear()) | self._annotated_files
        for file_name in sorted(cleared):
            self.context.clear_file(file_name)
        self._annotated_files = set()
        return cleared

    def _handle_annotation(self, prefix: str, message: Message, context: ParseContext) -> list[str]:
        if len(message.spans) != 1:
            logger.error(
                "Expected exactly one span for a quantifier annotation, got %d.",
                len(message.spans),
            )
            if not message.spans:
                return []
        span = message.spans[0]
        range_ = span_to_range(span)
        file_name = resolve_file_path(span.file_name, context)
        try:
            payload = json.loads(message.message[len(prefix) :])
            if prefix == QUANTIFIER_CHOSEN_TRIGGERS:
                chosen = QuantifierChosenTriggersPayload.model_validate(payload)
                triggers = chosen.triggers
                if not isinstance(triggers, str):
                    triggers = json.dumps(triggers)
                self.context.triggers.update(file_name, range_, (chosen.viper_quant, triggers))
            elif prefix == QUANTIFIER_INSTANTIATIONS:
                counted = QuantifierInstantiationsPayload.model_validate(payload)
                self.context.instantiations.update(
                    file_name, range_, (counted.method, counted.instantiations)
                )
            else:
                legacy = LegacyQuantifierInstantiationsPayload.model_validate(payload)
                self.context.instantiations.update(
                    file_name, range_, (legacy.q_name, legacy.instantiations)
                )
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.debug("Skipping malformed %s payload: %s", prefix, exc)
            return []
        logger.debug("Annotation %s at %s consumed", prefix, file_name)
        return [file_name]

    def _handle_ide_info(self, prefix: str, message: Message, context: ParseContext) -> list[str]:
        try:
            payload = json.loads(message.message[len(prefix) :])
            if prefix == COMPILER_INFO:
                return self._record_compiler_info(
                    CompilerInfoPayload.model_validate(payload), context
                )
            return self._record_result(VerificationResultPayload.model_validate(payload), context)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.debug("Skipping malformed %s payload: %s", prefix, exc)
            return []

    def _record_compiler_info(self, info: CompilerInfoPayload, context: ParseContext) -> list[str]:
        files: list[str] = []
        for proc_def in info.procedure_defs:
            span = call_site_span(proc_def.span)
            file_name = resolve_file_path(span.file_name, context)
            self.context.record_method_range(file_name, proc_def.name, span_to_range(span))
            files.append(file_name)
        return files

    def _record_result(self, result: VerificationResultPayload, context: ParseContext) -> list[str]:
        file_name = self.context.file_of_method(result.item_name) or context.default_file_path
        self.context.record_result(
            VerificationResult(
                file_name=file_name,
                method_name=result.item_name,
                success=result.success,
                time_ms=result.time_ms,
                cached=result.cached,
            )
        )
        return [file_name]

    def _handle_line(
        self,
        line: str,
        *,
        invocation: Invocation,
        store: DiagnosticStore,
        touched: set[str],
    ) -> None:
        payload = decode_line(line)
        if payload is None:
            return
        parsed = parse_message(payload, invocation.parse_context)
        if parsed is None:
            return
        message, parse_context = parsed
        prefix = side_channel_prefix(message.message)
        if prefix is not None:
            if prefix in (COMPILER_INFO, VERIFICATION_RESULT):
                files = self._handle_ide_info(prefix, message, parse_context)
            else:
                files = self._handle_annotation(prefix, message, parse_context)
            touched.update(files)
            self._annotated_files.update(files)
            return
        diagnostic = translate(message, parse_context)
        store.add_and_render(diagnostic, self.diagnostics_sink)
        touched.add(diagnostic.file_path)

    def _publish(self, touched: set[str], cleared: set[str]) -> None:
        if self.decoration_sink is not None:
            for file_name in sorted(touched | cleared):
                display_results(self.context, file_name, self.decoration_sink)
        for file_name in touched:
            self.context.updates.notify(file_name)
        # Nothing more arrives for the other files until the next run.
        self.context.updates.notify_all()

    async def verify(
        self,
        prusti: PrustiLocation,
        server_address: str,
        target_path: str,
        target: VerificationTarget,
    ) -> VerificationOutcome | None:
        """Run the verifier on ``target_path``.

        Returns ``None`` when a later run superseded this one.
        """
        self.run_count += 1
        current_run = self.run_count
        logger.info("Preparing verification run #%d.", current_run)
        self.kill_all()
        cleared = self._forget_previous_run()
        self.status_sink.set_busy(True)

        name = Path(target_path).name.replace("$", "\\$")
        self.status_sink.set_status(
            StatusText(f"$(sync~spin) Verifying {target.value} '{name}'...")
        )

        store = DiagnosticStore(report_errors_only=self.config.report_errors_only)
        self.diagnostics = store
        touched: set[str] = set()
        invocation = build_invocation(prusti, self.config, server_address, target_path, target)
        json_buffer = LineBuffer()

        def on_json_chunk(chunk: str) -> None:
            for line in json_buffer.feed(chunk):
                on_json_line(line)

        def on_json_line(line: str) -> None:
            if current_run != self.run_count:
                logger.debug("Dropping output of superseded run #%d.", current_run)
                return
            try:
                self._handle_line(line, invocation=invocation, store=store, touched=touched)
            except Exception:
                logger.exception("Failed to process verifier output line: %r", line)

        if target is VerificationTarget.CRATE:
            remove_diagnostic_metadata(target_path)

        status = VerificationStatus.CRASH
        duration: float | None = None
        try:
            output = await spawn(
                invocation.command,
                invocation.args,
                cwd=invocation.cwd,
                env=invocation.env,
                on_stdout=on_json_chunk if invocation.json_stream == "stdout" else None,
                on_stderr=on_json_chunk if invocation.json_stream == "stderr" else None,
                destructors=self._destructors,
                process_factory=self._process_factory,
                kill_tree=self._kill_tree,
            )
        except Exception:
            logger.exception("Error while running Prusti")
        else:
            for line in json_buffer.flush():
                on_json_line(line)
            status = classify_exit(output.code, output.stderr)
            duration = output.duration

        if current_run != self.run_count:
            logger.info(
                "Discarding the result of the verification run #%d, because the latest is #%d.",
                current_run,
                self.run_count,
            )
            return None

        crashed = status is VerificationStatus.CRASH
        if crashed:
            logger.error("Prusti encountered an unexpected error.")
        elif status is VerificationStatus.ERRORS and not store.has_errors():
            logger.error("The verification failed, but there are no errors to report.")
            crashed = True
            status = VerificationStatus.CRASH

        self.status_sink.set_busy(False)
        store.render_in(self.diagnostics_sink)
        self._publish(touched, cleared)
        if crashed:
            self.status_sink.notify_error(CRASH_MESSAGE)
        text = status_text(
            crashed=crashed, store=store, target=target, name=name, duration=duration
        )
        self.status_sink.set_status(text)
        counts = {
            severity.name.lower(): count
            for severity, count in store.counts_by_severity().items()
        }
        return VerificationOutcome(
            run_id=current_run,
            status=status,
            text=text,
            duration=duration,
            counts=counts,
        )
