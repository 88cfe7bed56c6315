"""
Service bootstrap: one call wires logs, traces and metrics into a FastAPI app.

Usage:
    app = FastAPI()
    bootstrap(app, load_config_source("config.yml"))
    add_custom_traces(app, "orders.checkout")
    add_custom_metrics(app, "orders.business")

Startup is synchronous and fail-fast: if anything cannot be built, the
exception propagates and the process does not start serving. After startup,
nothing in here raises into request handling.

FAILURE MODE:
A failure after the pipelines are built (global install, scrape route, shutdown
hook) shuts all three pipelines down and removes the request middleware before
re-raising. `app.state.telemetry` is only set once everything is wired, so a
retried bootstrap() starts clean.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from opentelemetry import metrics as metrics_api
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.metrics.export import MetricReader
from opentelemetry.sdk.trace.export import SpanExporter
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from telemetry_pipeline.config import ObservabilityOptions, resolve
from telemetry_pipeline.logging_config import LoggingPipelineComposer, LogPipeline
from telemetry_pipeline.pipeline import MetricsPipeline, PipelineComposer, TracingPipeline
from telemetry_pipeline.registrar import SignalRegistrar

logger = logging.getLogger(__name__)


@dataclass
class Telemetry:
    """Everything bootstrap() built for one service. Stored on `app.state.telemetry`."""
    options: ObservabilityOptions
    tracing: TracingPipeline
    metrics: MetricsPipeline
    logs: LogPipeline
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def registrar(self) -> SignalRegistrar:
        return self.tracing.registrar

    def shutdown(self, timeout_millis: int = 5000) -> None:
        """
        Best-effort, time-bounded final flush of all three pipelines.

        Errors are logged, never raised: a dead collector must not turn a
        clean shutdown into a crash.
        """
        if self._closed:
            return
        self._closed = True
        deadline = time.monotonic() + timeout_millis / 1000

        def remaining_ms() -> int:
            return max(0, int((deadline - time.monotonic()) * 1000))

        for name, flush in (
            ("traces", self.tracing.force_flush),
            ("metrics", self.metrics.force_flush),
            ("logs", self.logs.force_flush),
        ):
            try:
                if not flush(remaining_ms()):
                    logger.warning(f"Final {name} flush did not complete in time")
            except Exception as e:
                logger.warning(f"Final {name} flush failed: {e}")

        for name, close in (
            ("traces", self.tracing.shutdown),
            ("metrics", lambda: self.metrics.shutdown(remaining_ms())),
            ("logs", self.logs.shutdown),
        ):
            try:
                close()
            except Exception as e:
                logger.warning(f"Shutting down {name} pipeline failed: {e}")


def _mount_scrape_endpoint(app: FastAPI, path: str) -> None:
    if any(getattr(route, "path", None) == path for route in app.router.routes):
        logger.warning(f"Route {path} already exists, not mounting the metrics scrape endpoint")
        return

    def scrape_metrics(request: Request) -> Response:
        registry = get_telemetry(request.app).metrics.scrape_registry
        if registry is None:
            return Response(status_code=404)
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(path, scrape_metrics, methods=["GET"], include_in_schema=False)


def _register_final_flush(app: FastAPI, telemetry: Telemetry) -> None:
    """Run telemetry.shutdown() when the app's lifespan ends, after any user lifespan."""
    original = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan_with_flush(lifespan_app: Any) -> AsyncIterator[Any]:
        async with original(lifespan_app) as state:
            try:
                yield state
            finally:
                telemetry.shutdown()

    app.router.lifespan_context = lifespan_with_flush


def get_telemetry(app: FastAPI) -> Telemetry:
    telemetry = getattr(app.state, "telemetry", None)
    if telemetry is None:
        raise RuntimeError("bootstrap() must run before telemetry can be used")
    return telemetry


def bootstrap(
    app: FastAPI,
    config_source: Mapping[str, Any],
    *,
    install_globals: bool = True,
    span_exporters: Iterable[SpanExporter] = (),
    metric_readers: Iterable[MetricReader] = (),
    log_target: Optional[logging.Logger] = None,
) -> FastAPI:
    """
    Wire logging, tracing and metrics into the app. Run once, before serving.

    Args:
        app: The FastAPI application
        config_source: Configuration document holding `ObservabilityOptions`
        install_globals: Make these providers the process-wide OpenTelemetry defaults
        span_exporters: Extra span exporters (e.g. in-memory for tests)
        metric_readers: Extra metric readers
        log_target: Logger to attach the log sinks to (root by default)

    Returns:
        The same app, for chaining

    Raises:
        ConfigurationMissing / ConfigurationInvalid: Bad configuration
        PipelineBuildError: A pipeline could not be built
    """
    if getattr(app.state, "telemetry", None) is not None:
        logger.warning("Telemetry already bootstrapped for this app, skipping")
        return app

    options = resolve(config_source)

    # Logs first, so the rest of the build is logged through the new sinks
    logs = LoggingPipelineComposer(options).compose().install(log_target)

    composer = PipelineComposer(options).with_app(app)
    for exporter in span_exporters:
        composer = composer.with_span_exporter(exporter)
    for reader in metric_readers:
        composer = composer.with_metric_reader(reader)

    try:
        tracing, metrics = composer.compose()
    except Exception:
        logs.shutdown()
        raise

    telemetry = Telemetry(options=options, tracing=tracing, metrics=metrics, logs=logs)
    try:
        if install_globals:
            trace.set_tracer_provider(tracing.provider)
            metrics_api.set_meter_provider(metrics.provider)

        if metrics.prometheus_enabled:
            _mount_scrape_endpoint(app, options.metrics.scrape_path)

        _register_final_flush(app, telemetry)
    except Exception as e:
        logger.error(f"✗ Wiring telemetry into the app failed, shutting pipelines down: {e}")
        telemetry.shutdown()
        FastAPIInstrumentor.uninstrument_app(app)
        raise

    app.state.telemetry = telemetry

    logger.info(f"🔭 Observability initialized for {options.service_name} ({options.environment})")
    return app


def add_custom_traces(app: FastAPI, source_name: str, version: Optional[str] = None) -> FastAPI:
    """Register an extra trace source on a bootstrapped app. Chainable."""
    get_telemetry(app).registrar.register_trace_source(source_name, version)
    return app


def add_custom_metrics(app: FastAPI, meter_name: str, version: Optional[str] = None) -> FastAPI:
    """Register an extra meter on a bootstrapped app. Chainable."""
    get_telemetry(app).registrar.register_metric_source(meter_name, version)
    return app
