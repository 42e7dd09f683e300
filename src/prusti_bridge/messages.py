"""Translation of the verifier's compiler messages into diagnostics.

A wire message is a tree: a message with spans and nested child messages. The
tree is flattened into one :class:`lsprotocol.types.Diagnostic` whose related
information holds one entry per non-primary span and one per child.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from dataclasses import dataclass, replace
from enum import Enum

from lsprotocol.types import (
    Diagnostic,
    DiagnosticRelatedInformation,
    DiagnosticSeverity,
    Location,
    Range,
)
from pydantic import ValidationError

from prusti_bridge.ranges import dummy_range, span_range, union
from prusti_bridge.schema import CargoMessage, Level, Message, Span

logger = logging.getLogger(__name__)

DIAGNOSTIC_SOURCE = "prusti"
RELATED_FALLBACK_LABEL = "related expression"

# Message text prefixes of side-channel annotation events.
QUANTIFIER_INSTANTIATIONS_LEGACY = "quantifier_instantiations_message"
QUANTIFIER_INSTANTIATIONS = "quantifierInstantiationsMessage"
QUANTIFIER_CHOSEN_TRIGGERS = "quantifierChosenTriggersMessage"
QUANTIFIER_PREFIXES: tuple[str, ...] = (
    QUANTIFIER_INSTANTIATIONS_LEGACY,
    QUANTIFIER_INSTANTIATIONS,
    QUANTIFIER_CHOSEN_TRIGGERS,
)
# IDE info events, emitted when PRUSTI_SHOW_IDE_INFO is set. They carry no span.
COMPILER_INFO = "compilerInfo"
VERIFICATION_RESULT = "ideVerificationResult"
SIDE_CHANNEL_PREFIXES: tuple[str, ...] = (
    *QUANTIFIER_PREFIXES,
    COMPILER_INFO,
    VERIFICATION_RESULT,
)

_SEVERITY_BY_LEVEL: dict[str, DiagnosticSeverity] = {
    Level.ERROR.value: DiagnosticSeverity.Error,
    Level.WARNING.value: DiagnosticSeverity.Warning,
    Level.NOTE.value: DiagnosticSeverity.Information,
    Level.EMPTY.value: DiagnosticSeverity.Information,
    Level.HELP.value: DiagnosticSeverity.Hint,
}


class TargetMode(str, Enum):
    CRATE = "crate"
    STANDALONE = "standalone"


@dataclass(frozen=True)
class ParseContext:
    root_path: str
    mode: TargetMode
    default_file_path: str
    default_range: Range | None = None


@dataclass(frozen=True)
class ParsedDiagnostic:
    file_path: str
    diagnostic: Diagnostic


def severity_for_level(level: str) -> DiagnosticSeverity:
    return _SEVERITY_BY_LEVEL.get(level, DiagnosticSeverity.Error)


def call_site_span(span: Span) -> Span:
    """Follow the macro expansion chain up to the outermost call site."""
    while span.expansion is not None:
        span = span.expansion.span
    return span


def span_to_range(span: Span) -> Range:
    return span_range(span.line_start, span.column_start, span.line_end, span.column_end)


def multi_span_range(spans: list[Span]) -> Range | None:
    merged: Range | None = None
    for span in spans:
        current = span_to_range(span)
        merged = current if merged is None else union(merged, current)
    return merged


def resolve_file_path(file_name: str, context: ParseContext) -> str:
    if context.mode is TargetMode.CRATE:
        return os.path.join(context.root_path, file_name)
    return file_name


def file_uri(path: str) -> str:
    return Path(path).absolute().as_uri()


def side_channel_prefix(text: str) -> str | None:
    for prefix in SIDE_CHANNEL_PREFIXES:
        if text.startswith(prefix):
            return prefix
    return None


def translate(message: Message, context: ParseContext) -> ParsedDiagnostic:
    primary_message = message.message
    if message.code is not None:
        primary_message = f"[{message.code.code}] {primary_message}."

    primary_call_sites: list[Span] = []
    for span in message.spans:
        if not span.is_primary:
            continue
        if span.label is not None:
            primary_message = f"{primary_message}\n[Note] {span.label}"
        primary_call_sites.append(call_site_span(span))

    file_path = context.default_file_path
    primary_range = multi_span_range(primary_call_sites)
    if primary_range is None:
        primary_range = context.default_range or dummy_range()
    else:
        file_path = resolve_file_path(primary_call_sites[0].file_name, context)

    related: list[DiagnosticRelatedInformation] = []
    for span in message.spans:
        if span.is_primary:
            continue
        call_site = call_site_span(span)
        related.append(
            DiagnosticRelatedInformation(
                location=Location(
                    uri=file_uri(resolve_file_path(call_site.file_name, context)),
                    range=span_to_range(call_site),
                ),
                message=f"[Note] {span.label or RELATED_FALLBACK_LABEL}",
            )
        )

    child_context = replace(
        context,
        default_range=primary_range,
        default_file_path=(
            file_path if context.mode is TargetMode.CRATE else context.default_file_path
        ),
    )
    for child in message.children:
        child_diagnostic = translate(child, child_context)
        related.append(
            DiagnosticRelatedInformation(
                location=Location(
                    uri=file_uri(child_diagnostic.file_path),
                    range=child_diagnostic.diagnostic.range,
                ),
                message=child_diagnostic.diagnostic.message,
            )
        )

    diagnostic = Diagnostic(
        range=primary_range,
        message=primary_message,
        severity=severity_for_level(message.level),
        source=DIAGNOSTIC_SOURCE,
        related_information=related,
    )
    return ParsedDiagnostic(file_path=file_path, diagnostic=diagnostic)


def decode_line(line: str) -> dict | None:
    """Decode one wire line, or return ``None`` for non-JSON noise."""
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable line: %s", line)
        return None
    if not isinstance(payload, dict):
        logger.debug("Skipping non-object line: %s", line)
        return None
    return payload


def parse_message(payload: dict, context: ParseContext) -> tuple[Message, ParseContext] | None:
    """Validate a decoded line into a message and the context to translate it with.

    Crate mode lines are envelopes carrying the target's source path, which
    becomes the default file path of the resulting diagnostic.
    """
    try:
        if context.mode is TargetMode.CRATE:
            envelope = CargoMessage.model_validate(payload)
            return envelope.message, replace(
                context, default_file_path=envelope.target.src_path
            )
        return Message.model_validate(payload), context
    except ValidationError as exc:
        logger.debug("Skipping unrecognized message shape: %s", exc)
        return None


def parse_line(line: str, context: ParseContext) -> tuple[Message, ParseContext] | None:
    payload = decode_line(line)
    if payload is None:
        return None
    return parse_message(payload, context)
