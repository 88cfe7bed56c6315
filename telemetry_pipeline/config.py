"""
Observability configuration.

Loads the `ObservabilityOptions` section from a configuration source into an
immutable snapshot shared by every pipeline.

CRITICAL DESIGN DECISION:
Parsing is explicit and field-by-field. There is no reflective binding that maps
a config subtree onto attributes by name. Renaming a field in code never
silently turns a config key into dead weight.

FAILURE MODE:
Missing section -> ConfigurationMissing. Bad fields -> ConfigurationInvalid
listing every bad field. Both abort boot before any network connection exists.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

from telemetry_pipeline.exceptions import ConfigurationInvalid, ConfigurationMissing

logger = logging.getLogger(__name__)

SECTION_NAME = "ObservabilityOptions"
CONFIG_PATH_ENV = "OBSERVABILITY_CONFIG"

# Serilog-style level names are accepted next to the stdlib names so existing
# config files keep working.
_LEVEL_ALIASES = {
    "VERBOSE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFORMATION": "INFO",
    "INFO": "INFO",
    "WARNING": "WARNING",
    "WARN": "WARNING",
    "ERROR": "ERROR",
    "FATAL": "CRITICAL",
    "CRITICAL": "CRITICAL",
}

_VALID_SCHEMES = ("http", "https", "grpc")

DEFAULT_SUPPRESSED_ROUTES = ("/health", "/health/live", "/health/ready")

# Leaves room for the longest built-in suffix within the 255 character limit
_MAX_NAMESPACE_LENGTH = 200
_FALLBACK_NAMESPACE = "service"


@dataclass(frozen=True)
class LoggingConfig:
    """Log pipeline settings (subtree `Logging`)."""
    minimum_level: str = "INFO"
    overrides: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    console_enabled: bool = True
    json_console: bool = True
    otlp_enabled: bool = True
    resource_attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class TracingConfig:
    """Trace pipeline settings (subtree `Tracing`)."""
    console_exporter: bool = True
    otlp_exporter: bool = True
    suppressed_routes: Tuple[str, ...] = DEFAULT_SUPPRESSED_ROUTES
    suppressed_methods: Tuple[str, ...] = ("GET",)
    export_timeout_millis: int = 10000


@dataclass(frozen=True)
class MetricsConfig:
    """Metrics pipeline settings (subtree `Metrics`)."""
    prometheus_enabled: bool = True
    scrape_path: str = "/metrics"
    otlp_exporter: bool = True
    export_interval_millis: int = 60000


@dataclass(frozen=True)
class ObservabilityOptions:
    """Immutable snapshot of the `ObservabilityOptions` section."""
    service_name: str
    collector_uri: str
    environment: str = "development"
    service_version: str = "1.0.0"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    resource_attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def metric_namespace(self) -> str:
        """
        Service name sanitized for use as a metric name prefix.

        Instrument names must start with a letter and stay within 255
        characters, so "9-api" becomes "svc_9_api" and a name with no
        alphanumerics at all falls back to "service".
        """
        namespace = re.sub(r"[^0-9a-zA-Z]+", "_", self.service_name).strip("_").lower()
        if not namespace:
            return _FALLBACK_NAMESPACE
        if not namespace[0].isalpha():
            namespace = f"svc_{namespace}"
        return namespace[:_MAX_NAMESPACE_LENGTH].rstrip("_")

    @property
    def collector_is_secure(self) -> bool:
        return urlparse(self.collector_uri).scheme == "https"

    @property
    def logs_endpoint(self) -> str:
        return f"{self.collector_uri.rstrip('/')}/v1/logs"


# ============================================================================
# FIELD PARSERS
# ============================================================================
# Each parser appends to `errors` instead of raising, so a single resolve()
# reports every bad field at once.
# ============================================================================

def _parse_str(
    node: Mapping[str, Any], key: str, path: str, errors: List[str],
    default: Optional[str] = None, required: bool = False,
) -> Optional[str]:
    value = node.get(key)
    if value is None:
        if required:
            errors.append(f"{path}.{key} is required")
        return default
    if not isinstance(value, str):
        errors.append(f"{path}.{key} must be a string, got {type(value).__name__}")
        return default
    value = value.strip()
    if required and not value:
        errors.append(f"{path}.{key} must not be empty")
    return value or default


def _parse_bool(
    node: Mapping[str, Any], key: str, path: str, errors: List[str], default: bool,
) -> bool:
    value = node.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    # Environment overlays arrive as strings
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    errors.append(f"{path}.{key} must be a boolean")
    return default


def _parse_positive_int(
    node: Mapping[str, Any], key: str, path: str, errors: List[str], default: int,
) -> int:
    value = node.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        errors.append(f"{path}.{key} must be an integer")
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors.append(f"{path}.{key} must be an integer")
        return default
    if parsed <= 0:
        errors.append(f"{path}.{key} must be positive")
        return default
    return parsed


def _parse_level(value: Any, path: str, errors: List[str], default: str = "INFO") -> str:
    if not isinstance(value, str) or value.strip().upper() not in _LEVEL_ALIASES:
        errors.append(f"{path} must be one of {sorted(set(_LEVEL_ALIASES.values()))}")
        return default
    return _LEVEL_ALIASES[value.strip().upper()]


def _parse_str_list(
    node: Mapping[str, Any], key: str, path: str, errors: List[str],
    default: Tuple[str, ...],
) -> Tuple[str, ...]:
    value = node.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        value = [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        errors.append(f"{path}.{key} must be a list of strings")
        return default
    return tuple(value)


def _parse_attributes(
    node: Mapping[str, Any], key: str, path: str, errors: List[str],
) -> Mapping[str, Any]:
    value = node.get(key)
    if value is None:
        return MappingProxyType({})
    if not isinstance(value, Mapping):
        errors.append(f"{path}.{key} must be a mapping")
        return MappingProxyType({})
    attributes: Dict[str, Any] = {}
    for name, attr in value.items():
        if not isinstance(attr, (str, bool, int, float)):
            errors.append(f"{path}.{key}.{name} must be a string, number or boolean")
            continue
        attributes[str(name)] = attr
    return MappingProxyType(attributes)


def _parse_subtree(
    node: Mapping[str, Any], key: str, path: str, errors: List[str],
) -> Mapping[str, Any]:
    value = node.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        errors.append(f"{path}.{key} must be a mapping")
        return {}
    return value


def _parse_collector_uri(node: Mapping[str, Any], path: str, errors: List[str]) -> str:
    raw = _parse_str(node, "CollectorUri", path, errors, required=True)
    if not raw:
        return ""
    parsed = urlparse(raw)
    if parsed.scheme not in _VALID_SCHEMES or not parsed.hostname:
        errors.append(
            f"{path}.CollectorUri must be an absolute {'/'.join(_VALID_SCHEMES)} URI, got '{raw}'"
        )
        return raw
    try:
        parsed.port
    except ValueError:
        errors.append(f"{path}.CollectorUri has an invalid port: '{raw}'")
    return raw.rstrip("/")


def _parse_logging(node: Mapping[str, Any], path: str, errors: List[str]) -> LoggingConfig:
    defaults = LoggingConfig()
    overrides_node = _parse_subtree(node, "Overrides", path, errors)
    overrides = {
        str(name): _parse_level(level, f"{path}.Overrides.{name}", errors)
        for name, level in overrides_node.items()
    }
    level = node.get("MinimumLevel")
    return LoggingConfig(
        minimum_level=(
            defaults.minimum_level if level is None
            else _parse_level(level, f"{path}.MinimumLevel", errors)
        ),
        overrides=MappingProxyType(overrides),
        console_enabled=_parse_bool(node, "Console", path, errors, defaults.console_enabled),
        json_console=_parse_bool(node, "JsonConsole", path, errors, defaults.json_console),
        otlp_enabled=_parse_bool(node, "Otlp", path, errors, defaults.otlp_enabled),
        resource_attributes=_parse_attributes(node, "ResourceAttributes", path, errors),
    )


def _parse_tracing(node: Mapping[str, Any], path: str, errors: List[str]) -> TracingConfig:
    defaults = TracingConfig()
    routes = _parse_str_list(node, "SuppressedRoutes", path, errors, defaults.suppressed_routes)
    methods = _parse_str_list(node, "SuppressedMethods", path, errors, defaults.suppressed_methods)
    return TracingConfig(
        console_exporter=_parse_bool(node, "ConsoleExporter", path, errors, defaults.console_exporter),
        otlp_exporter=_parse_bool(node, "OtlpExporter", path, errors, defaults.otlp_exporter),
        suppressed_routes=routes,
        suppressed_methods=tuple(m.upper() for m in methods),
        export_timeout_millis=_parse_positive_int(
            node, "ExportTimeoutMillis", path, errors, defaults.export_timeout_millis
        ),
    )


def _parse_metrics(node: Mapping[str, Any], path: str, errors: List[str]) -> MetricsConfig:
    defaults = MetricsConfig()
    scrape_path = _parse_str(node, "ScrapePath", path, errors, default=defaults.scrape_path)
    if scrape_path and not scrape_path.startswith("/"):
        errors.append(f"{path}.ScrapePath must start with '/'")
        scrape_path = defaults.scrape_path
    return MetricsConfig(
        prometheus_enabled=_parse_bool(node, "Prometheus", path, errors, defaults.prometheus_enabled),
        scrape_path=scrape_path,
        otlp_exporter=_parse_bool(node, "OtlpExporter", path, errors, defaults.otlp_exporter),
        export_interval_millis=_parse_positive_int(
            node, "ExportIntervalMillis", path, errors, defaults.export_interval_millis
        ),
    )


# ============================================================================
# RESOLVE (pure)
# ============================================================================

def resolve(config_source: Mapping[str, Any], section: str = SECTION_NAME) -> ObservabilityOptions:
    """
    Resolve the observability section of a configuration source.

    Pure: no I/O, no globals. Calling it twice on the same source yields
    equal snapshots.

    Args:
        config_source: Parsed configuration document (e.g. from load_config_source)
        section: Name of the section holding the options

    Returns:
        Immutable ObservabilityOptions

    Raises:
        ConfigurationMissing: Section absent
        ConfigurationInvalid: Required fields missing or malformed
    """
    node = config_source.get(section) if isinstance(config_source, Mapping) else None
    if node is None:
        raise ConfigurationMissing(section)
    if not isinstance(node, Mapping):
        raise ConfigurationInvalid(section, [f"{section} must be a mapping"])

    errors: List[str] = []
    service_name = _parse_str(node, "ServiceName", section, errors, required=True)
    collector_uri = _parse_collector_uri(node, section, errors)
    environment = _parse_str(node, "Environment", section, errors, default="development")
    service_version = _parse_str(node, "ServiceVersion", section, errors, default="1.0.0")
    logging_config = _parse_logging(
        _parse_subtree(node, "Logging", section, errors), f"{section}.Logging", errors
    )
    tracing_config = _parse_tracing(
        _parse_subtree(node, "Tracing", section, errors), f"{section}.Tracing", errors
    )
    metrics_config = _parse_metrics(
        _parse_subtree(node, "Metrics", section, errors), f"{section}.Metrics", errors
    )
    resource_attributes = _parse_attributes(node, "ResourceAttributes", section, errors)

    if errors:
        raise ConfigurationInvalid(section, errors)

    return ObservabilityOptions(
        service_name=service_name,
        collector_uri=collector_uri,
        environment=environment,
        service_version=service_version,
        logging=logging_config,
        tracing=tracing_config,
        metrics=metrics_config,
        resource_attributes=resource_attributes,
    )


# ============================================================================
# CONFIG SOURCE LOADING (the only I/O in this module)
# ============================================================================

def _overlay_environment(document: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Apply `ObservabilityOptions__Logging__MinimumLevel=DEBUG` style variables.

    Double underscore separates nesting levels (the same convention ASP.NET
    style hosts use, so one .env file serves both).
    """
    prefix = SECTION_NAME + "__"
    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        parts = name.split("__")
        node = document
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return document


def load_config_source(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Build a configuration source from a YAML file plus environment overrides.

    Args:
        path: YAML file path. Falls back to $OBSERVABILITY_CONFIG; no file is fine.
        environ: Environment mapping (defaults to os.environ after loading .env)

    Returns:
        Plain dict ready for resolve()
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    path = path or environ.get(CONFIG_PATH_ENV)
    document: Dict[str, Any] = {}
    if path:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationInvalid(SECTION_NAME, [f"{path} must contain a mapping at top level"])
        document = loaded
        logger.debug(f"Loaded configuration from {path}")

    return _overlay_environment(document, environ)
