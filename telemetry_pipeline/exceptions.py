"""
Exception classes for the telemetry pipeline.

Exception design:
1. Startup errors (configuration, pipeline build) are FATAL - the service must
   not accept traffic with half-wired telemetry.
2. Runtime errors on the telemetry path are never raised into application code.
   They are absorbed by exporters or counted by the span filter.
3. Registration conflicts are raised to the caller that registered the signal.
"""

from typing import Any, Dict, List, Optional


class ObservabilityError(Exception):
    """
    Base exception for all telemetry pipeline errors.

    Every exception carries:
    - Error code (stable, machine-readable)
    - Message (for operators reading the boot log)
    - Recovery hint (what to change to get the service booting)
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        recovery_hint: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recovery_hint = recovery_hint
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for structured logs."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "hint": self.recovery_hint,
            }
        }


# ============================================================================
# CONFIGURATION ERRORS (fatal at startup)
# ============================================================================

class ConfigurationError(ObservabilityError):
    """Base class for configuration failures."""


class ConfigurationMissing(ConfigurationError):
    """
    The required configuration section is absent.

    Response: abort boot. There is no sensible default for a service name
    or a collector endpoint.
    """

    def __init__(self, section: str):
        super().__init__(
            message=f"Required configuration section '{section}' is missing",
            error_code="configuration_missing",
            recovery_hint=f"Add a '{section}' section with ServiceName and CollectorUri",
            section=section,
        )
        self.section = section


class ConfigurationInvalid(ConfigurationError):
    """
    One or more fields failed type/shape validation.

    All field errors are collected so one failed boot reports everything
    that needs fixing, not just the first problem.
    """

    def __init__(self, section: str, errors: List[str]):
        super().__init__(
            message=f"Invalid '{section}' configuration: " + "; ".join(errors),
            error_code="configuration_invalid",
            recovery_hint="Fix the listed fields and restart",
            section=section,
        )
        self.section = section
        self.errors = list(errors)


# ============================================================================
# BUILD ERRORS (fatal at startup)
# ============================================================================

class PipelineBuildError(ObservabilityError):
    """
    A pipeline could not be built (exporter construction, malformed endpoint).

    Response: abort boot. Partial pipelines are shut down before raising.
    """

    def __init__(self, pipeline: str, reason: str):
        super().__init__(
            message=f"Failed to build {pipeline} pipeline: {reason}",
            error_code="pipeline_build_failed",
            recovery_hint="Check exporter settings and CollectorUri",
            pipeline=pipeline,
        )
        self.pipeline = pipeline


# ============================================================================
# REGISTRATION ERRORS
# ============================================================================

class DuplicateNameConflict(ObservabilityError):
    """
    A signal source name was registered twice with incompatible settings.

    Registering the same name with the same settings is idempotent and
    never raises.
    """

    def __init__(self, kind: str, name: str, existing: Any, requested: Any):
        super().__init__(
            message=(
                f"{kind} source '{name}' already registered with {existing}, "
                f"cannot re-register with {requested}"
            ),
            error_code="duplicate_name_conflict",
            recovery_hint="Use a distinct source name or the same version/schema",
            kind=kind,
            name=name,
        )
        self.kind = kind
        self.name = name
