"""
Custom signal registration.

Services add their own trace sources ("orders.checkout") and meters
("orders.business") after bootstrap. Sources come straight from the running
providers, so they take part in the existing pipelines immediately. Nothing
is rebuilt.

Registration is idempotent: registering "orders.checkout" twice with the same
version returns the same tracer. Registering it again with a different
version or schema is a DuplicateNameConflict. Two components would otherwise
emit under one name with different semantics.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from opentelemetry.metrics import Meter, MeterProvider
from opentelemetry.trace import Tracer, TracerProvider

from telemetry_pipeline.exceptions import DuplicateNameConflict

logger = logging.getLogger(__name__)

_Signature = Tuple[Optional[str], Optional[str]]


class SignalRegistrar:
    """
    Catalog of named trace sources and meters bound to one pair of providers.

    Thread-safe. Registration is off the hot path, so a plain lock is fine.
    """

    def __init__(self, tracer_provider: TracerProvider, meter_provider: MeterProvider):
        self._tracer_provider = tracer_provider
        self._meter_provider = meter_provider
        self._lock = threading.Lock()
        self._tracers: Dict[str, Tuple[_Signature, Tracer]] = {}
        self._meters: Dict[str, Tuple[_Signature, Meter]] = {}

    @staticmethod
    def _check_name(name: str) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Signal source name must be a non-empty string")
        return name.strip()

    def register_trace_source(
        self,
        name: str,
        version: Optional[str] = None,
        schema_url: Optional[str] = None,
    ) -> Tracer:
        """
        Register a named trace source.

        Returns:
            Tracer bound to the running tracer provider

        Raises:
            DuplicateNameConflict: Name already registered with another version/schema
        """
        name = self._check_name(name)
        signature = (version, schema_url)
        with self._lock:
            existing = self._tracers.get(name)
            if existing is not None:
                if existing[0] != signature:
                    raise DuplicateNameConflict("trace", name, existing[0], signature)
                return existing[1]
            tracer = self._tracer_provider.get_tracer(name, version, schema_url)
            self._tracers[name] = (signature, tracer)
        logger.info(f"Registered trace source '{name}'")
        return tracer

    def register_metric_source(
        self,
        name: str,
        version: Optional[str] = None,
        schema_url: Optional[str] = None,
    ) -> Meter:
        """
        Register a named meter.

        Returns:
            Meter bound to the running meter provider (visible to every reader)

        Raises:
            DuplicateNameConflict: Name already registered with another version/schema
        """
        name = self._check_name(name)
        signature = (version, schema_url)
        with self._lock:
            existing = self._meters.get(name)
            if existing is not None:
                if existing[0] != signature:
                    raise DuplicateNameConflict("metric", name, existing[0], signature)
                return existing[1]
            meter = self._meter_provider.get_meter(name, version, schema_url)
            self._meters[name] = (signature, meter)
        logger.info(f"Registered metric source '{name}'")
        return meter

    @property
    def trace_sources(self) -> List[str]:
        with self._lock:
            return sorted(self._tracers)

    @property
    def metric_sources(self) -> List[str]:
        with self._lock:
            return sorted(self._meters)
