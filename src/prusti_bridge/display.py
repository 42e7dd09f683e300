from __future__ import annotations

import logging

from prusti_bridge.context import BridgeContext
from prusti_bridge.ranges import full_line_range
from prusti_bridge.sinks import Decoration, DecorationSink, DecorationStyle

logger = logging.getLogger(__name__)


def decorations_for(context: BridgeContext, file_name: str) -> list[Decoration]:
    """One decoration per method of ``file_name`` with a known range.

    The decoration covers the rest of the method's first line so that it is
    drawn after the source text. Methods without a result are not verified.
    """
    results = {result.method_name: result for result in context.results_for(file_name)}
    decorations: list[Decoration] = []
    for (range_file, method_name), method_range in context.method_ranges.items():
        if range_file != file_name:
            continue
        line_range = full_line_range(method_range)
        result = results.pop(method_name, None)
        if result is None:
            decorations.append(Decoration(range=line_range, style=DecorationStyle.NOT_VERIFIED))
            continue
        decorations.append(
            Decoration(
                range=line_range,
                style=DecorationStyle.SUCCESS if result.success else DecorationStyle.FAILURE,
                time_ms=result.time_ms,
                cached=result.cached,
            )
        )
    for method_name in results:
        logger.info("No range for verification result of %s in %s", method_name, file_name)
    return decorations


def display_results(context: BridgeContext, file_name: str, sink: DecorationSink) -> None:
    logger.debug(
        "Found %d verification results for %s",
        len(context.results_for(file_name)),
        file_name,
    )
    sink.set_decorations(file_name, decorations_for(context, file_name))
