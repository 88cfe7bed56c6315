"""
Service Resource attributes.

These labels appear on EVERY span, metric point and log record from this
service. They are how a backend tells "orders-api" telemetry apart from
"billing-api" telemetry.

FAILURE MODE: If the resource is missing, every service looks identical in the
backend. You see "latency = 500ms" but not which service produced it.
"""

from typing import Any, Mapping, Optional

from opentelemetry.sdk.resources import (
    DEPLOYMENT_ENVIRONMENT,
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
)

from telemetry_pipeline.config import ObservabilityOptions


def create_resource(
    options: ObservabilityOptions,
    extra: Optional[Mapping[str, Any]] = None,
) -> Resource:
    """
    Creates an OpenTelemetry Resource with service metadata.

    Resource.create() merges in the SDK defaults (telemetry.sdk.*) and
    OTEL_RESOURCE_ATTRIBUTES from the environment. Our attributes win on
    conflicts.

    Args:
        options: Resolved observability options
        extra: Additional attributes for this pipeline only (e.g. log resource tags)

    Returns:
        OpenTelemetry Resource object
    """
    attributes = dict(options.resource_attributes)
    if extra:
        attributes.update(extra)
    attributes.update({
        SERVICE_NAME: options.service_name,
        SERVICE_VERSION: options.service_version,
        DEPLOYMENT_ENVIRONMENT: options.environment,
    })
    return Resource.create(attributes)
