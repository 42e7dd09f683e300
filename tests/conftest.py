from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from prusti_bridge.config import PrustiLocation
from prusti_bridge.context import BridgeContext
from prusti_bridge.sinks import RecordingDiagnosticsSink, RecordingStatusSink


@pytest.fixture
def prusti_location() -> PrustiLocation:
    return PrustiLocation(
        cargo_prusti="/opt/prusti/cargo-prusti",
        prusti_rustc="/opt/prusti/prusti-rustc",
        prusti_server="/opt/prusti/prusti-server",
    )


@pytest.fixture
def bridge_context() -> BridgeContext:
    return BridgeContext()


@pytest.fixture
def diagnostics_sink() -> RecordingDiagnosticsSink:
    return RecordingDiagnosticsSink()


@pytest.fixture
def status_sink() -> RecordingStatusSink:
    return RecordingStatusSink()


@pytest.fixture
def write_config():
    def _write(root: Path, section: dict[str, object]) -> Path:
        lines = ["[verification]"]
        for key, value in section.items():
            lines.append(f"{key} = {json.dumps(value)}")
        path = root / "prusti-bridge.toml"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
