"""State shared by the verification components of one host session.

The host creates a single :class:`BridgeContext` at startup, hands it to
every component that needs it and disposes it at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from lsprotocol.types import Range

from prusti_bridge.range_index import QuantifierInstantiationsIndex, QuantifierTriggersIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    file_name: str
    method_name: str
    success: bool
    time_ms: int | None = None
    cached: bool = False


class UpdateWaiters:
    """Pending "tell me when this file is next updated" requests."""

    def __init__(self) -> None:
        self._pending: dict[str, list[asyncio.Future[None]]] = {}

    def wait_for(self, file_name: str) -> asyncio.Future[None]:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending.setdefault(file_name, []).append(future)
        return future

    def notify(self, file_name: str) -> int:
        resolved = 0
        for future in self._pending.pop(file_name, []):
            if not future.done():
                future.set_result(None)
                resolved += 1
        return resolved

    def notify_all(self) -> int:
        """Resolve every pending request; used when a run ends."""
        return sum(self.notify(file_name) for file_name in list(self._pending))

    def cancel_all(self) -> None:
        for futures in self._pending.values():
            for future in futures:
                if not future.done():
                    future.cancel()
        self._pending.clear()


@dataclass
class BridgeContext:
    instantiations: QuantifierInstantiationsIndex = field(
        default_factory=QuantifierInstantiationsIndex
    )
    triggers: QuantifierTriggersIndex = field(default_factory=QuantifierTriggersIndex)
    updates: UpdateWaiters = field(default_factory=UpdateWaiters)
    verification_results: list[VerificationResult] = field(default_factory=list)
    method_ranges: dict[tuple[str, str], Range] = field(default_factory=dict)

    def record_method_range(self, file_name: str, method_name: str, range_: Range) -> None:
        self.method_ranges[(file_name, method_name)] = range_

    def record_result(self, result: VerificationResult) -> None:
        self.verification_results = [
            existing
            for existing in self.verification_results
            if (existing.file_name, existing.method_name)
            != (result.file_name, result.method_name)
        ]
        self.verification_results.append(result)

    def results_for(self, file_name: str) -> list[VerificationResult]:
        return [result for result in self.verification_results if result.file_name == file_name]

    def file_of_method(self, method_name: str) -> str | None:
        for file_name, name in self.method_ranges:
            if name == method_name:
                return file_name
        return None

    def clear_file(self, file_name: str) -> None:
        """Forget everything known about a file whose diagnostics were cleared."""
        self.instantiations.clear_file(file_name)
        self.triggers.clear_file(file_name)
        self.verification_results = [
            result for result in self.verification_results if result.file_name != file_name
        ]
        for key in [key for key in self.method_ranges if key[0] == file_name]:
            del self.method_ranges[key]

    def dispose(self) -> None:
        logger.info("Dispose verification context")
        self.updates.cancel_all()
        self.instantiations.clear()
        self.triggers.clear()
        self.verification_results.clear()
        self.method_ranges.clear()
