"""Tests for tracing/metrics pipeline composition."""

import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest.mock import MagicMock

import pytest
import requests
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY, generate_latest

from telemetry_pipeline import pipeline as pipeline_module
from telemetry_pipeline.config import resolve
from telemetry_pipeline.exceptions import PipelineBuildError
from telemetry_pipeline.exporters import BestEffortSpanExporter
from telemetry_pipeline.filtering import FilterRule, SpanFilterProcessor
from telemetry_pipeline.pipeline import PipelineComposer


class TestPipelineComposer:
    """Test cases for PipelineComposer."""

    def test_with_methods_return_new_composer(self, options, span_exporter):
        base = PipelineComposer(options)
        extended = base.with_span_exporter(span_exporter)

        assert base.span_exporters == ()
        assert extended.span_exporters == (span_exporter,)
        assert extended is not base

    def test_filter_is_the_only_processor_on_the_provider(self, composed, span_exporter):
        tracing, _ = composed

        processors = tracing.provider._active_span_processor._span_processors
        assert len(processors) == 1
        assert isinstance(processors[0], SpanFilterProcessor)
        assert processors[0] is tracing.filter_processor

        (export_processor,) = tracing.filter_processor.processors
        assert isinstance(export_processor, SimpleSpanProcessor)
        assert export_processor.span_exporter is span_exporter

    def test_health_check_is_dropped_and_business_span_exported(self, composed, span_exporter):
        tracing, _ = composed
        tracer = tracing.service_tracer

        with tracer.start_as_current_span("GET /health", attributes={"http.route": "/health", "http.method": "GET"}):
            pass
        with tracer.start_as_current_span("GET /orders/{id}", attributes={"http.route": "/orders/{id}", "http.method": "GET"}):
            pass

        names = [s.name for s in span_exporter.get_finished_spans()]
        assert names == ["GET /orders/{id}"]

    def test_span_carries_service_resource(self, composed, span_exporter):
        tracing, _ = composed

        with tracing.service_tracer.start_as_current_span("work"):
            pass

        (span,) = span_exporter.get_finished_spans()
        assert span.resource.attributes["service.name"] == "orders-api"
        assert span.resource.attributes["deployment.environment"] == "test"
        assert span.instrumentation_scope.name == "orders-api"

    def test_filter_decisions_recorded_under_service_namespace(self, composed, metric_reader, read_metric):
        tracing, _ = composed

        with tracing.service_tracer.start_as_current_span("GET /health", attributes={"http.route": "/health", "http.method": "GET"}):
            pass

        points = read_metric(metric_reader, "orders_api.span_filter.decisions")
        assert {p.attributes["decision"]: p.value for p in points} == {"dropped": 1}

    def test_uptime_gauge_is_always_present(self, composed, metric_reader, read_metric):
        points = read_metric(metric_reader, "orders_api.process.uptime")

        assert len(points) == 1
        assert points[0].value >= 0

    def test_compose_twice_gives_independent_pipelines(self, options):
        """Each composition delivers a span exactly once, to its own exporter."""
        first_exporter, second_exporter = InMemorySpanExporter(), InMemorySpanExporter()
        composer = PipelineComposer(options).with_http_instrumentation(False)

        first, first_metrics = composer.with_span_exporter(first_exporter).compose()
        second, second_metrics = composer.with_span_exporter(second_exporter).compose()
        try:
            with first.service_tracer.start_as_current_span("only-first"):
                pass

            assert len(first_exporter.get_finished_spans()) == 1
            assert second_exporter.get_finished_spans() == ()
            assert len(first.filter_processor.processors) == len(second.filter_processor.processors)
        finally:
            for built in (first, first_metrics, second, second_metrics):
                built.shutdown()

    def test_custom_filter_rule(self, options, span_exporter):
        tracing, metrics = (
            PipelineComposer(options)
            .with_span_exporter(span_exporter)
            .with_filter_rule(FilterRule.for_routes(["/orders/*"], []))
            .with_http_instrumentation(False)
            .compose()
        )
        try:
            with tracing.service_tracer.start_as_current_span("POST /orders", attributes={"http.route": "/orders/new", "http.method": "POST"}):
                pass
            with tracing.service_tracer.start_as_current_span("GET /health", attributes={"http.route": "/health", "http.method": "GET"}):
                pass

            assert [s.name for s in span_exporter.get_finished_spans()] == ["GET /health"]
        finally:
            tracing.shutdown()
            metrics.shutdown()

    def test_registered_sources_flow_through_the_filter(self, composed, span_exporter, metric_reader, read_metric):
        tracing, metrics = composed

        checkout = tracing.tracer("orders.checkout", "2.0.0")
        with checkout.start_as_current_span("reserve-stock"):
            pass
        metrics.registrar.register_metric_source("orders.business").create_counter("orders.placed").add(3)

        (span,) = span_exporter.get_finished_spans()
        assert span.instrumentation_scope.name == "orders.checkout"
        assert sum(p.value for p in read_metric(metric_reader, "orders.placed")) == 3


class TestExporterSelection:
    """Which exporters/readers are built from the options."""

    def test_console_exporter_is_best_effort(self, config_factory):
        options = resolve(config_factory(Tracing={"ConsoleExporter": True, "OtlpExporter": False}))
        composer = PipelineComposer(options)

        (console,) = composer._export_processors()
        assert isinstance(console, SimpleSpanProcessor)
        assert isinstance(console.span_exporter, BestEffortSpanExporter)

    def test_otlp_exporters_target_collector(self, config_factory, monkeypatch):
        span_exporter_cls = MagicMock()
        metric_exporter_cls = MagicMock()
        monkeypatch.setattr(pipeline_module, "OTLPSpanExporter", span_exporter_cls)
        monkeypatch.setattr(pipeline_module, "OTLPMetricExporter", metric_exporter_cls)
        monkeypatch.setattr(pipeline_module, "PeriodicExportingMetricReader", MagicMock())
        options = resolve(config_factory(
            CollectorUri="https://collector:4317",
            Tracing={"ConsoleExporter": False, "OtlpExporter": True},
            Metrics={"Prometheus": False, "OtlpExporter": True},
        ))
        composer = PipelineComposer(options)

        (otlp,) = composer._export_processors()
        composer._metric_readers(None)

        assert isinstance(otlp, BatchSpanProcessor)
        span_exporter_cls.assert_called_once_with(
            endpoint="https://collector:4317", insecure=False, timeout=10.0,
        )
        metric_exporter_cls.assert_called_once_with(endpoint="https://collector:4317", insecure=False)
        otlp.shutdown()

    def test_scrape_path_is_suppressed_when_prometheus_enabled(self, config_factory):
        options = resolve(config_factory(Metrics={"Prometheus": True, "OtlpExporter": False}))

        rule = PipelineComposer(options)._default_rule()

        assert rule.matches({"http.route": "/metrics", "http.method": "GET"})
        assert rule.matches({"http.route": "/health/live", "http.method": "GET"})


class TestScrapeRegistry:
    """Each pipeline's Prometheus collector lives in its own registry."""

    @pytest.fixture
    def prometheus_options(self, config_factory):
        return resolve(config_factory(Metrics={"Prometheus": True, "OtlpExporter": False}))

    def test_compose_twice_scrapes_each_family_once(self, prometheus_options):
        composer = PipelineComposer(prometheus_options).with_http_instrumentation(False)

        first, first_metrics = composer.compose()
        second, second_metrics = composer.compose()
        try:
            for metrics in (first_metrics, second_metrics):
                assert metrics.prometheus_enabled
                text = generate_latest(metrics.scrape_registry).decode()
                help_lines = [
                    line for line in text.splitlines()
                    if line.startswith("# HELP orders_api_process_uptime")
                ]
                assert len(help_lines) == 1

            assert first_metrics.scrape_registry is not second_metrics.scrape_registry
            assert "orders_api_process_uptime" not in generate_latest(REGISTRY).decode()
        finally:
            for built in (first, first_metrics, second, second_metrics):
                built.shutdown()

    def test_no_registry_without_prometheus(self, composed):
        _, metrics = composed

        assert metrics.scrape_registry is None
        assert not metrics.prometheus_enabled


class TestOutboundHttp:
    """`requests` instrumentation follows the most recently composed pipeline."""

    @pytest.fixture
    def local_server(self):
        class QuietHandler(BaseHTTPRequestHandler):
            def do_GET(self):
                self.send_response(200)
                self.send_header("Content-Length", "2")
                self.end_headers()
                self.wfile.write(b"ok")

            def log_message(self, format, *args):
                pass

        server = HTTPServer(("127.0.0.1", 0), QuietHandler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        yield f"http://127.0.0.1:{server.server_address[1]}/inventory"
        server.shutdown()
        server.server_close()

    @pytest.fixture
    def session(self):
        session = requests.Session()
        session.trust_env = False
        yield session
        session.close()

    def test_outbound_spans_follow_the_newest_pipeline(self, options, local_server, session):
        first_exporter, second_exporter = InMemorySpanExporter(), InMemorySpanExporter()

        first, first_metrics = PipelineComposer(options).with_span_exporter(first_exporter).compose()
        try:
            session.get(local_server)
        finally:
            first.shutdown()
            first_metrics.shutdown()
        assert len(first_exporter.get_finished_spans()) == 1

        second, second_metrics = PipelineComposer(options).with_span_exporter(second_exporter).compose()
        try:
            session.get(local_server)
        finally:
            second.shutdown()
            second_metrics.shutdown()

        assert len(second_exporter.get_finished_spans()) == 1
        assert len(first_exporter.get_finished_spans()) == 1
        assert not RequestsInstrumentor().is_instrumented_by_opentelemetry

    def test_shutting_down_a_replaced_pipeline_keeps_the_newer_binding(self, options, local_server, session):
        first_exporter, second_exporter = InMemorySpanExporter(), InMemorySpanExporter()

        first, first_metrics = PipelineComposer(options).with_span_exporter(first_exporter).compose()
        second, second_metrics = PipelineComposer(options).with_span_exporter(second_exporter).compose()
        try:
            first.shutdown()
            first_metrics.shutdown()

            session.get(local_server)

            assert RequestsInstrumentor().is_instrumented_by_opentelemetry
            assert len(second_exporter.get_finished_spans()) == 1
            assert first_exporter.get_finished_spans() == ()
        finally:
            second.shutdown()
            second_metrics.shutdown()


class TestMetricNamespace:
    """Service names that are not valid instrument prefixes still compose."""

    @pytest.mark.parametrize("service_name, namespace", [("9-api", "svc_9_api"), ("---", "service")])
    def test_compose_with_awkward_service_name(self, config_factory, read_metric, service_name, namespace):
        reader = InMemoryMetricReader()
        options = resolve(config_factory(service_name=service_name))

        tracing, metrics = (
            PipelineComposer(options)
            .with_metric_reader(reader)
            .with_http_instrumentation(False)
            .compose()
        )
        try:
            assert len(read_metric(reader, f"{namespace}.process.uptime")) == 1
        finally:
            tracing.shutdown()
            metrics.shutdown()


class TestBuildFailures:
    """Build errors abort composition and leave nothing running."""

    def test_exporter_construction_failure(self, config_factory, monkeypatch):
        monkeypatch.setattr(
            pipeline_module, "OTLPSpanExporter", MagicMock(side_effect=ValueError("bad endpoint")),
        )
        shutdowns = []
        original_shutdown = pipeline_module.MeterProvider.shutdown

        def tracking_shutdown(provider, *args, **kwargs):
            shutdowns.append(provider)
            return original_shutdown(provider, *args, **kwargs)

        monkeypatch.setattr(pipeline_module.MeterProvider, "shutdown", tracking_shutdown)
        options = resolve(config_factory(Tracing={"ConsoleExporter": False, "OtlpExporter": True}))

        with pytest.raises(PipelineBuildError) as exc_info:
            PipelineComposer(options).with_http_instrumentation(False).compose()

        assert exc_info.value.pipeline == "tracing"
        assert "bad endpoint" in str(exc_info.value)
        assert len(shutdowns) == 1, "Partial meter provider should be shut down"

    def test_extra_reader_is_owned_by_one_pipeline(self, options):
        """An SDK reader can only be registered once; the second build fails cleanly."""
        reader = InMemoryMetricReader()
        composer = PipelineComposer(options).with_metric_reader(reader).with_http_instrumentation(False)
        tracing, metrics = composer.compose()
        try:
            with pytest.raises(PipelineBuildError) as exc_info:
                composer.compose()
            assert exc_info.value.pipeline == "metrics"
        finally:
            tracing.shutdown()
            metrics.shutdown()
