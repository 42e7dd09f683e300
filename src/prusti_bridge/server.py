from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence
from urllib.parse import unquote, urlparse

from lsprotocol.types import (
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_INLAY_HINT,
    Diagnostic,
    Hover,
    HoverParams,
    InlayHint,
    InlayHintParams,
    MarkupContent,
    MarkupKind,
    MessageType,
    PublishDiagnosticsParams,
    ShowMessageParams,
)
from pydantic import ValidationError
from pygls.lsp.server import LanguageServer

from prusti_bridge import __version__
from prusti_bridge.config import BridgeConfig, PrustiLocation, load_bridge_config, prusti_location
from prusti_bridge.context import BridgeContext
from prusti_bridge.display import decorations_for
from prusti_bridge.exceptions import ServerError
from prusti_bridge.invariants import never
from prusti_bridge.schema import (
    DecorationDTO,
    JSONObject,
    ShowResultsResponseDTO,
    VerificationCommandDTO,
    VerifyResponseDTO,
)
from prusti_bridge.server_manager import PrustiServer
from prusti_bridge.sinks import Decoration, StatusText
from prusti_bridge.verification import VerificationManager, VerificationTarget

logger = logging.getLogger(__name__)

VERIFY_COMMAND = "prustiBridge.verify"
SHOW_RESULTS_COMMAND = "prustiBridge.showResults"
STATUS_NOTIFICATION = "prustiBridge/status"
BUSY_NOTIFICATION = "prustiBridge/busy"
DECORATIONS_NOTIFICATION = "prustiBridge/decorations"


def _uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


def _require_payload(payload: object, *, command: str) -> dict[str, object]:
    if payload is None:
        never("missing command payload", command=command)
    if not isinstance(payload, dict):
        never(
            "invalid command payload type",
            command=command,
            payload_type=type(payload).__name__,
        )
    return payload


def _decoration_dtos(file_path: str, decorations: Sequence[Decoration]) -> list[DecorationDTO]:
    return [
        DecorationDTO(
            file_name=file_path,
            line=decoration.range.start.line,
            character=decoration.range.start.character,
            style=decoration.style.value,
            time_ms=decoration.time_ms,
            cached=decoration.cached,
        )
        for decoration in decorations
    ]


class LspDiagnosticsSink:
    def __init__(self, ls: LanguageServer) -> None:
        self._ls = ls
        self._published: set[str] = set()

    def set(self, uri: str, diagnostics: Sequence[Diagnostic]) -> None:
        self._published.add(uri)
        self._ls.text_document_publish_diagnostics(
            PublishDiagnosticsParams(uri=uri, diagnostics=list(diagnostics))
        )

    def clear(self) -> None:
        for uri in sorted(self._published):
            self._ls.text_document_publish_diagnostics(
                PublishDiagnosticsParams(uri=uri, diagnostics=[])
            )
        self._published.clear()


class LspStatusSink:
    def __init__(self, ls: LanguageServer) -> None:
        self._ls = ls

    def set_status(self, status: StatusText) -> None:
        self._ls.protocol.notify(
            STATUS_NOTIFICATION, {"text": status.text, "command": status.command}
        )

    def set_busy(self, busy: bool) -> None:
        self._ls.protocol.notify(BUSY_NOTIFICATION, {"busy": busy})

    def notify_error(self, text: str) -> None:
        self._ls.window_show_message(ShowMessageParams(type=MessageType.Error, message=text))


class LspDecorationSink:
    def __init__(self, ls: LanguageServer) -> None:
        self._ls = ls

    def set_decorations(self, file_path: str, decorations: Sequence[Decoration]) -> None:
        self._ls.protocol.notify(
            DECORATIONS_NOTIFICATION,
            {
                "path": file_path,
                "decorations": [
                    dto.model_dump() for dto in _decoration_dtos(file_path, decorations)
                ],
            },
        )


@dataclass
class BridgeSession:
    """Everything one language server instance owns, torn down by ``dispose``."""

    config: BridgeConfig
    location: PrustiLocation
    context: BridgeContext = field(default_factory=BridgeContext)
    manager: VerificationManager | None = None
    prusti_server: PrustiServer = field(default_factory=PrustiServer)
    refresh_inlay_hints: Callable[[], None] | None = None

    async def server_address(self) -> str:
        return await self.prusti_server.ensure_ready(self.location, self.config)

    def dispose(self) -> None:
        if self.manager is not None:
            self.manager.dispose()
        self.prusti_server.stop()
        self.prusti_server.manager.dispose()
        self.context.dispose()


async def verify_command(session: BridgeSession, payload: object) -> JSONObject:
    raw = _require_payload(payload, command=VERIFY_COMMAND)
    try:
        request = VerificationCommandDTO.model_validate(raw)
        target = VerificationTarget(request.target)
    except (ValidationError, ValueError) as exc:
        return {"status": "invalid", "errors": [str(exc)]}
    if session.manager is None:
        never("verification requested before the session was attached")
    try:
        address = request.server_address or await session.server_address()
    except (ServerError, OSError) as exc:
        logger.error("Prusti server unavailable: %s", exc)
        return {"status": "crash", "errors": [str(exc)]}
    outcome = await session.manager.verify(session.location, address, request.path, target)
    refresh_changed_inlay_hints(session)
    if outcome is None:
        return {"status": "superseded"}
    return VerifyResponseDTO(
        status=outcome.status.value,
        text=outcome.text.text,
        counts=outcome.counts,
    ).model_dump()


def show_results_command(session: BridgeSession, payload: object) -> JSONObject:
    raw = _require_payload(payload, command=SHOW_RESULTS_COMMAND)
    path = raw.get("path")
    if not isinstance(path, str) or not path:
        return ShowResultsResponseDTO(errors=["path is required"]).model_dump()
    decorations = _decoration_dtos(path, decorations_for(session.context, path))
    return ShowResultsResponseDTO(decorations=decorations).model_dump()


def refresh_changed_inlay_hints(session: BridgeSession) -> None:
    if session.context.instantiations.take_changed() and session.refresh_inlay_hints is not None:
        session.refresh_inlay_hints()


async def _await_running_verification(session: BridgeSession, file_name: str) -> None:
    if session.manager is not None and session.manager.in_progress():
        await session.context.updates.wait_for(file_name)


async def hover(session: BridgeSession, params: HoverParams) -> Hover | None:
    file_name = str(_uri_to_path(params.text_document.uri))
    await _await_running_verification(session, file_name)
    text = session.context.triggers.hover_text(file_name, params.position)
    if text is None:
        text = session.context.instantiations.hover_text(file_name, params.position)
    if text is None:
        return None
    return Hover(contents=MarkupContent(kind=MarkupKind.PlainText, value=text))


async def inlay_hints(session: BridgeSession, params: InlayHintParams) -> list[InlayHint]:
    # Hints outside the requested range are filtered by the client.
    file_name = str(_uri_to_path(params.text_document.uri))
    await _await_running_verification(session, file_name)
    return [
        InlayHint(position=annotation.position, label=annotation.label, tooltip=annotation.tooltip)
        for annotation in session.context.instantiations.render(file_name)
    ]


def create_server(session: BridgeSession) -> LanguageServer:
    server = LanguageServer("prusti-bridge", __version__)
    session.manager = VerificationManager(
        session.context,
        LspDiagnosticsSink(server),
        LspStatusSink(server),
        config=session.config,
        decoration_sink=LspDecorationSink(server),
    )
    session.refresh_inlay_hints = lambda: server.workspace_inlay_hint_refresh(None)

    @server.command(VERIFY_COMMAND)
    async def _verify(ls: LanguageServer, payload: dict | None = None) -> JSONObject:
        return await verify_command(session, payload)

    @server.command(SHOW_RESULTS_COMMAND)
    def _show_results(ls: LanguageServer, payload: dict | None = None) -> JSONObject:
        return show_results_command(session, payload)

    @server.feature(TEXT_DOCUMENT_HOVER)
    async def _hover(ls: LanguageServer, params: HoverParams) -> Hover | None:
        return await hover(session, params)

    @server.feature(TEXT_DOCUMENT_INLAY_HINT)
    async def _inlay_hints(ls: LanguageServer, params: InlayHintParams) -> list[InlayHint]:
        return await inlay_hints(session, params)

    return server


def start(
    root: Path | None = None,
    start_fn: Callable[[LanguageServer], None] | None = None,
) -> None:
    """Start the language server on stdio."""
    config = load_bridge_config(root=root)
    session = BridgeSession(config=config, location=prusti_location(config))
    server = create_server(session)
    try:
        (start_fn or (lambda ls: ls.start_io()))(server)
    finally:
        session.dispose()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
