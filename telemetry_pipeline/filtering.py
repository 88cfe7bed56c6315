"""
Span Filtering

Health checks, readiness probes and scrape requests are a large share of all
requests a service sees, and nobody ever looks at their traces. This module
drops them BEFORE they reach an exporter:

    TracerProvider
        └── SpanFilterProcessor (rule)
                ├── SimpleSpanProcessor(ConsoleSpanExporter)
                └── BatchSpanProcessor(OTLPSpanExporter)

HOW IT WORKS:
1. on_start: no decision. The route is usually not known yet (the framework
   resolves `http.route` after routing, while the span is already open).
2. on_end: evaluate the FilterRule against the FINAL attributes.
   - match    -> DROPPED: no downstream processor or exporter sees the span
   - no match -> FORWARDED: the same span object goes to every downstream processor

CRITICAL: HOT PATH
------------------
on_start/on_end run inline on the request thread, once per span. No locks, no
I/O, no per-span state. The rule is immutable; the counters are SDK
instruments (thread-safe, non-blocking).

FAILURE MODE:
If the predicate raises, the span is FORWARDED (fail open) and the failure is
counted. Silently dropping spans on a bug would create blind spots.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from opentelemetry.context import Context
from opentelemetry.metrics import Meter
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor

logger = logging.getLogger(__name__)

# Old and new HTTP semantic conventions, in lookup order
ROUTE_ATTRIBUTE_KEYS = ("http.route", "url.path", "http.target")
METHOD_ATTRIBUTE_KEYS = ("http.request.method", "http.method")


class Decision(enum.Enum):
    FORWARDED = "forwarded"
    DROPPED = "dropped"


# Pre-built attribute sets so the hot path allocates nothing per span
_FORWARDED_ATTRS = {"decision": Decision.FORWARDED.value}
_DROPPED_ATTRS = {"decision": Decision.DROPPED.value}


@dataclass(frozen=True)
class FilterRule:
    """
    Deterministic, side-effect-free predicate over final span attributes.

    A span matches when its route is one of `routes` (or starts with one of
    `route_prefixes`) AND its method is in `methods`. An empty `methods` set
    matches any method. A span without a route attribute never matches.
    """
    routes: FrozenSet[str] = frozenset()
    route_prefixes: Tuple[str, ...] = ()
    methods: FrozenSet[str] = frozenset({"GET"})
    route_keys: Tuple[str, ...] = ROUTE_ATTRIBUTE_KEYS
    method_keys: Tuple[str, ...] = METHOD_ATTRIBUTE_KEYS

    @classmethod
    def for_routes(cls, routes: Iterable[str], methods: Iterable[str] = ("GET",)) -> "FilterRule":
        """
        Build a rule from route patterns.

        A pattern ending in `*` is a prefix match: `/internal/*` suppresses
        everything below `/internal/`.
        """
        exact, prefixes = set(), []
        for route in routes:
            if route.endswith("*"):
                prefixes.append(route[:-1])
            else:
                exact.add(route)
        return cls(
            routes=frozenset(exact),
            route_prefixes=tuple(prefixes),
            methods=frozenset(m.upper() for m in methods),
        )

    def _first(self, attributes: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
        for key in keys:
            value = attributes.get(key)
            if value is not None:
                return value if isinstance(value, str) else None
        return None

    def matches(self, attributes: Optional[Mapping[str, Any]]) -> bool:
        if not attributes:
            return False
        route = self._first(attributes, self.route_keys)
        if route is None:
            return False
        if route not in self.routes:
            if not self.route_prefixes or not route.startswith(self.route_prefixes):
                return False
        if not self.methods:
            return True
        method = self._first(attributes, self.method_keys)
        return method is not None and method.upper() in self.methods


class SpanFilterProcessor(SpanProcessor):
    """
    Pipeline stage that forwards or drops each span when it ends.

    Downstream processors run in registration order, and each one receives
    every forwarded span. Start and end of the same span may arrive on
    different threads; nothing here depends on the thread.

    Args:
        rule: Object with a `matches(attributes) -> bool` method (usually FilterRule)
        processors: Downstream processors (one per exporter)
        meter: Optional meter for decision/error counters
        namespace: Metric name prefix (the service namespace)
    """

    def __init__(
        self,
        rule: Any,
        processors: Sequence[SpanProcessor] = (),
        meter: Optional[Meter] = None,
        namespace: str = "telemetry",
    ):
        self._rule = rule
        self._processors = tuple(processors)
        self._decisions = None
        self._errors = None
        if meter is not None:
            self._decisions = meter.create_counter(
                f"{namespace}.span_filter.decisions",
                unit="{span}",
                description="Spans evaluated by the span filter, by decision",
            )
            self._errors = meter.create_counter(
                f"{namespace}.span_filter.evaluation_errors",
                unit="{error}",
                description="Span filter predicate failures (span forwarded)",
            )

    @property
    def processors(self) -> Tuple[SpanProcessor, ...]:
        return self._processors

    def decide(self, span: ReadableSpan) -> Decision:
        """Evaluate the rule against the span's final attributes. Never raises."""
        try:
            matched = self._rule.matches(span.attributes)
        except Exception:
            if self._errors is not None:
                self._errors.add(1)
            logger.debug(f"Span filter predicate failed on '{span.name}', forwarding", exc_info=True)
            return Decision.FORWARDED
        return Decision.DROPPED if matched else Decision.FORWARDED

    def on_start(self, span: Span, parent_context: Optional[Context] = None) -> None:
        for processor in self._processors:
            processor.on_start(span, parent_context=parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        if self.decide(span) is Decision.DROPPED:
            if self._decisions is not None:
                self._decisions.add(1, _DROPPED_ATTRS)
            return

        if self._decisions is not None:
            self._decisions.add(1, _FORWARDED_ATTRS)
        for processor in self._processors:
            processor.on_end(span)

    def shutdown(self) -> None:
        for processor in self._processors:
            processor.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        # One deadline shared by all downstream processors
        deadline_ns = time.time_ns() + timeout_millis * 1_000_000
        flushed = True
        for processor in self._processors:
            remaining_ms = max(0, (deadline_ns - time.time_ns()) // 1_000_000)
            if not processor.force_flush(int(remaining_ms)):
                flushed = False
        return flushed
