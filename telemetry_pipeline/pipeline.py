"""
Tracing and Metrics Pipeline Composition

Builds the trace and metric pipelines ONCE, at startup, in a fixed order:

    1. Resource         service.name / service.version / deployment.environment
    2. Metric readers   Prometheus (scrape endpoint) + periodic OTLP push
    3. Sampler          ALWAYS_ON - suppression is the span filter's job, not sampling's
    4. Sources          trace source + meter named after the service
    5. Span filter      installed as the ONLY processor on the provider...
    6. Exporters        ...wrapping console (best-effort) + batched OTLP/gRPC
    7. HTTP adapters    FastAPI (inbound) + requests (outbound) auto-instrumentation

HTTP instrumentation goes live the moment it is attached, so it comes last:
no span can be produced before the filter and exporters are in place.

CRITICAL: Fail fast at build time, never afterwards
----------------------------------------------------
Any exception while building is wrapped in PipelineBuildError and the partial
providers are shut down. The service must not serve traffic with half-wired
telemetry. Once built, export failures are absorbed inside the exporters
(retry, batch, drop) and never reach request code.

ARCHITECTURAL PATTERN: Builder value
PipelineComposer is a frozen dataclass. Every `with_*` call returns a NEW
composer, so a composer handed to another component cannot be mutated behind
its back. The composer never touches global OpenTelemetry state;
bootstrap() decides whether to install the providers globally.

PROCESS-WIDE STATE (the two exceptions):
- Prometheus: each pipeline scrapes its own CollectorRegistry, never the
  global prometheus_client.REGISTRY, so two live pipelines cannot emit the
  same metric family twice.
- requests: patching is process-wide. The most recently composed pipeline
  owns the outbound adapter; shutting down the owner removes it.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Optional, Tuple

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.metrics import CallbackOptions, Meter, Observation
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.trace import Tracer
from prometheus_client import CollectorRegistry

from telemetry_pipeline.config import ObservabilityOptions
from telemetry_pipeline.exceptions import PipelineBuildError
from telemetry_pipeline.exporters import BestEffortSpanExporter
from telemetry_pipeline.filtering import FilterRule, SpanFilterProcessor
from telemetry_pipeline.registrar import SignalRegistrar
from telemetry_pipeline.resources import create_resource

logger = logging.getLogger(__name__)


# ============================================================================
# OUTBOUND HTTP OWNERSHIP
# ============================================================================

_outbound_lock = threading.Lock()
_outbound_owner: Optional[TracerProvider] = None


def attach_outbound_http(tracer_provider: TracerProvider, meter_provider: MeterProvider) -> None:
    """Bind `requests` instrumentation to these providers, replacing any earlier binding."""
    global _outbound_owner
    with _outbound_lock:
        instrumentor = RequestsInstrumentor()
        if instrumentor.is_instrumented_by_opentelemetry:
            instrumentor.uninstrument()
        instrumentor.instrument(tracer_provider=tracer_provider, meter_provider=meter_provider)
        _outbound_owner = tracer_provider


def detach_outbound_http(tracer_provider: TracerProvider) -> None:
    """Remove `requests` instrumentation if these providers still own it."""
    global _outbound_owner
    with _outbound_lock:
        if _outbound_owner is not tracer_provider:
            return
        RequestsInstrumentor().uninstrument()
        _outbound_owner = None


@dataclass
class TracingPipeline:
    """A built trace pipeline. Owns the tracer provider and its processors."""
    provider: TracerProvider
    filter_processor: SpanFilterProcessor
    registrar: SignalRegistrar
    service_tracer: Tracer

    def tracer(self, name: str, version: Optional[str] = None) -> Tracer:
        """Shortcut for registrar.register_trace_source()."""
        return self.registrar.register_trace_source(name, version)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.provider.force_flush(timeout_millis)

    def shutdown(self) -> None:
        detach_outbound_http(self.provider)
        self.provider.shutdown()


@dataclass
class MetricsPipeline:
    """
    A built metrics pipeline. Owns the meter provider and its readers.

    `scrape_registry` holds only this pipeline's Prometheus collector
    (None when Prometheus is disabled). The scrape endpoint serves it.
    """
    provider: MeterProvider
    meter: Meter
    readers: Tuple[MetricReader, ...]
    registrar: SignalRegistrar
    scrape_registry: Optional[CollectorRegistry] = None

    @property
    def prometheus_enabled(self) -> bool:
        return self.scrape_registry is not None

    def force_flush(self, timeout_millis: float = 10000) -> bool:
        return self.provider.force_flush(timeout_millis)

    def shutdown(self, timeout_millis: float = 30000) -> None:
        self.provider.shutdown(timeout_millis)


@dataclass(frozen=True)
class PipelineComposer:
    """
    Immutable builder for the trace + metric pipelines.

    Usage:
        tracing, metrics = (
            PipelineComposer(options)
            .with_app(app)
            .compose()
        )

    Extra exporters/readers are owned by the pipeline they are composed into
    (an SDK reader can only ever be attached to one provider).
    """
    options: ObservabilityOptions
    app: Any = None
    span_exporters: Tuple[SpanExporter, ...] = ()
    metric_readers: Tuple[MetricReader, ...] = ()
    filter_rule: Any = None
    http_instrumentation: bool = True

    def with_app(self, app: Any) -> "PipelineComposer":
        return replace(self, app=app)

    def with_span_exporter(self, exporter: SpanExporter) -> "PipelineComposer":
        return replace(self, span_exporters=self.span_exporters + (exporter,))

    def with_metric_reader(self, reader: MetricReader) -> "PipelineComposer":
        return replace(self, metric_readers=self.metric_readers + (reader,))

    def with_filter_rule(self, rule: Any) -> "PipelineComposer":
        return replace(self, filter_rule=rule)

    def with_http_instrumentation(self, enabled: bool) -> "PipelineComposer":
        return replace(self, http_instrumentation=enabled)

    # ------------------------------------------------------------------
    # Build steps (called in order by compose)
    # ------------------------------------------------------------------

    def _metric_readers(self, scrape_registry: Optional[CollectorRegistry]) -> List[MetricReader]:
        metrics_config = self.options.metrics
        readers: List[MetricReader] = []
        if scrape_registry is not None:
            # Collector lives in this pipeline's registry (served at scrape_path)
            readers.append(PrometheusMetricReader(registry=scrape_registry))
        if metrics_config.otlp_exporter:
            exporter = OTLPMetricExporter(
                endpoint=self.options.collector_uri,
                insecure=not self.options.collector_is_secure,
            )
            readers.append(PeriodicExportingMetricReader(
                exporter, export_interval_millis=metrics_config.export_interval_millis,
            ))
        readers.extend(self.metric_readers)
        return readers

    def _export_processors(self) -> List[SpanProcessor]:
        tracing_config = self.options.tracing
        processors: List[SpanProcessor] = []
        if tracing_config.console_exporter:
            # Development aid: synchronous, best-effort
            processors.append(SimpleSpanProcessor(BestEffortSpanExporter(ConsoleSpanExporter())))
        if tracing_config.otlp_exporter:
            exporter = OTLPSpanExporter(
                endpoint=self.options.collector_uri,
                insecure=not self.options.collector_is_secure,
                timeout=tracing_config.export_timeout_millis / 1000,
            )
            # Bounded queue, background thread: request threads never wait on the network
            processors.append(BatchSpanProcessor(exporter))
        processors.extend(SimpleSpanProcessor(exporter) for exporter in self.span_exporters)
        return processors

    def _default_rule(self) -> FilterRule:
        tracing_config = self.options.tracing
        routes = list(tracing_config.suppressed_routes)
        # Scrapes are as noisy as health checks
        if self.options.metrics.prometheus_enabled:
            routes.append(self.options.metrics.scrape_path)
        return FilterRule.for_routes(routes, tracing_config.suppressed_methods)

    def _register_uptime(self, meter: Meter) -> None:
        started = time.monotonic()

        def observe_uptime(options: CallbackOptions) -> Iterable[Observation]:
            yield Observation(time.monotonic() - started)

        meter.create_observable_gauge(
            f"{self.options.metric_namespace}.process.uptime",
            callbacks=[observe_uptime],
            unit="s",
            description="Seconds since the telemetry pipeline was built",
        )

    def _instrument_http(self, tracer_provider: TracerProvider, meter_provider: MeterProvider) -> None:
        if self.app is not None:
            FastAPIInstrumentor.instrument_app(
                self.app,
                tracer_provider=tracer_provider,
                meter_provider=meter_provider,
                exclude_spans=["receive", "send"],
            )
        attach_outbound_http(tracer_provider, meter_provider)

    def compose(self) -> Tuple[TracingPipeline, MetricsPipeline]:
        """
        Build both pipelines in fixed order.

        Returns:
            (TracingPipeline, MetricsPipeline)

        Raises:
            PipelineBuildError: Any build step failed (partial pipelines are shut down)
        """
        options = self.options
        meter_provider: Optional[MeterProvider] = None
        tracer_provider: Optional[TracerProvider] = None
        stage = "metrics"

        try:
            resource: Resource = create_resource(options)

            scrape_registry = CollectorRegistry() if options.metrics.prometheus_enabled else None
            readers = self._metric_readers(scrape_registry)
            meter_provider = MeterProvider(
                resource=resource, metric_readers=readers, shutdown_on_exit=False,
            )

            stage = "tracing"
            tracer_provider = TracerProvider(
                resource=resource, sampler=ALWAYS_ON, shutdown_on_exit=False,
            )

            registrar = SignalRegistrar(tracer_provider, meter_provider)
            service_tracer = registrar.register_trace_source(
                options.service_name, options.service_version,
            )
            service_meter = registrar.register_metric_source(
                options.service_name, options.service_version,
            )
            self._register_uptime(service_meter)

            filter_processor = SpanFilterProcessor(
                self.filter_rule or self._default_rule(),
                processors=self._export_processors(),
                meter=service_meter,
                namespace=options.metric_namespace,
            )
            tracer_provider.add_span_processor(filter_processor)

            if self.http_instrumentation:
                stage = "instrumentation"
                self._instrument_http(tracer_provider, meter_provider)
        except Exception as e:
            logger.error(f"✗ Failed to build {stage} pipeline for {options.service_name}: {e}")
            if tracer_provider is not None:
                detach_outbound_http(tracer_provider)
            for provider in (tracer_provider, meter_provider):
                if provider is not None:
                    try:
                        provider.shutdown()
                    except Exception:
                        logger.debug("Ignoring error while shutting down partial pipeline", exc_info=True)
            raise PipelineBuildError(stage, str(e)) from e

        logger.info(f"✓ Tracing initialized: {options.service_name} → {options.collector_uri}")
        logger.info(
            f"✓ Metrics initialized: {options.service_name} "
            f"({len(readers)} reader(s), prometheus={options.metrics.prometheus_enabled})"
        )

        tracing = TracingPipeline(
            provider=tracer_provider,
            filter_processor=filter_processor,
            registrar=registrar,
            service_tracer=service_tracer,
        )
        metrics = MetricsPipeline(
            provider=meter_provider,
            meter=service_meter,
            readers=tuple(readers),
            registrar=registrar,
            scrape_registry=scrape_registry,
        )
        return tracing, metrics
