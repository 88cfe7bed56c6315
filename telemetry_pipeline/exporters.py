"""
Exporter wrappers.

A broken telemetry backend must never break the monitored application. The
OTLP exporters already absorb transport failures (retry with backoff, then
return FAILURE). The console exporter does not: a closed or broken stdout
raises straight into the request thread, because it runs behind a
SimpleSpanProcessor.
"""

import logging
from typing import Sequence

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

logger = logging.getLogger(__name__)


class BestEffortSpanExporter(SpanExporter):
    """Wraps an exporter so export failures are reported as FAILURE, never raised."""

    def __init__(self, exporter: SpanExporter):
        self._exporter = exporter

    @property
    def wrapped(self) -> SpanExporter:
        return self._exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            return self._exporter.export(spans)
        except Exception as e:
            logger.debug(f"{type(self._exporter).__name__} failed to export {len(spans)} span(s): {e}")
            return SpanExportResult.FAILURE

    def shutdown(self) -> None:
        try:
            self._exporter.shutdown()
        except Exception as e:
            logger.debug(f"{type(self._exporter).__name__} failed to shut down: {e}")

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        try:
            return self._exporter.force_flush(timeout_millis)
        except Exception as e:
            logger.debug(f"{type(self._exporter).__name__} failed to flush: {e}")
            return False
