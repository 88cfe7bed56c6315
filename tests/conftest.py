"""
Pytest configuration and fixtures for telemetry pipeline tests.

Network exporters are disabled in every fixture config; in-memory exporters
and readers stand in for the collector.
"""

import io
import logging
import uuid
from typing import Any, Callable, Dict, List

import pytest
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from telemetry_pipeline.config import resolve
from telemetry_pipeline.pipeline import PipelineComposer


def _section(service_name: str) -> Dict[str, Any]:
    return {
        "ServiceName": service_name,
        "CollectorUri": "http://localhost:4317",
        "Environment": "test",
        "Logging": {"Console": False, "Otlp": False},
        "Tracing": {"ConsoleExporter": False, "OtlpExporter": False},
        "Metrics": {"Prometheus": False, "OtlpExporter": False},
    }


@pytest.fixture
def config_factory() -> Callable[..., Dict[str, Any]]:
    """Build a config source with network exporters off. Keyword args override section keys."""
    def factory(service_name: str = "orders-api", **overrides) -> Dict[str, Any]:
        section = _section(service_name)
        section.update(overrides)
        return {"ObservabilityOptions": section}
    return factory


@pytest.fixture
def options(config_factory):
    return resolve(config_factory())


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def composed(options, span_exporter, metric_reader):
    """Tracing + metrics pipelines wired to in-memory exporter/reader."""
    tracing, metrics = (
        PipelineComposer(options)
        .with_span_exporter(span_exporter)
        .with_metric_reader(metric_reader)
        .with_http_instrumentation(False)
        .compose()
    )
    yield tracing, metrics
    tracing.shutdown()
    metrics.shutdown()


@pytest.fixture
def read_metric() -> Callable[[InMemoryMetricReader, str], List[Any]]:
    """Return the data points of a metric by name (empty list if not recorded)."""
    def read(reader: InMemoryMetricReader, name: str) -> List[Any]:
        data = reader.get_metrics_data()
        if data is None:
            return []
        points = []
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points
    return read


@pytest.fixture
def private_logger() -> logging.Logger:
    """A throwaway logger that does not propagate to root."""
    test_logger = logging.getLogger(f"telemetry_tests.{uuid.uuid4().hex}")
    test_logger.propagate = False
    return test_logger


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()
