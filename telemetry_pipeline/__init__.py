"""
Telemetry Pipeline

Wires the "Three Pillars of Observability" into a FastAPI service:
1. TRACES: OpenTelemetry → OTLP/gRPC collector (health checks filtered out)
2. METRICS: OpenTelemetry meters → Prometheus scrape endpoint + OTLP push
3. LOGS: Structured JSON on stdout + OTLP/HTTP bridge to the collector

FAILURE MODE:
Bad configuration or an unbuildable pipeline aborts startup. A collector that
goes down after startup only loses telemetry; the application keeps running.
"""

__version__ = "0.1.0"

from telemetry_pipeline.bootstrap import (
    Telemetry,
    add_custom_metrics,
    add_custom_traces,
    bootstrap,
    get_telemetry,
)
from telemetry_pipeline.config import ObservabilityOptions, load_config_source, resolve
from telemetry_pipeline.exceptions import (
    ConfigurationInvalid,
    ConfigurationMissing,
    DuplicateNameConflict,
    ObservabilityError,
    PipelineBuildError,
)
from telemetry_pipeline.filtering import FilterRule, SpanFilterProcessor
from telemetry_pipeline.logging_config import LoggingPipelineComposer, LogPipeline
from telemetry_pipeline.pipeline import MetricsPipeline, PipelineComposer, TracingPipeline
from telemetry_pipeline.registrar import SignalRegistrar

__all__ = [
    "bootstrap",
    "add_custom_traces",
    "add_custom_metrics",
    "get_telemetry",
    "Telemetry",
    "ObservabilityOptions",
    "load_config_source",
    "resolve",
    "ObservabilityError",
    "ConfigurationMissing",
    "ConfigurationInvalid",
    "PipelineBuildError",
    "DuplicateNameConflict",
    "FilterRule",
    "SpanFilterProcessor",
    "LoggingPipelineComposer",
    "LogPipeline",
    "PipelineComposer",
    "TracingPipeline",
    "MetricsPipeline",
    "SignalRegistrar",
]
