"""
OpenTelemetry helpers.

Exporter and SDK setup belong to the hosting process; this module only hands
out named tracers and meters from the globally configured providers.
"""

from opentelemetry import metrics, trace

from dropmarket.settings import settings


def get_tracer(name: str, version: str | None = None) -> trace.Tracer:
    """
    Get a tracer for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Tracer instance
    """
    return trace.get_tracer(name, version or settings.app_version)


def get_meter(name: str, version: str | None = None) -> metrics.Meter:
    """
    Get a meter for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Meter instance
    """
    return metrics.get_meter(name, version or settings.app_version)


def record_error(span: trace.Span, error: Exception) -> None:
    """Attach an exception to a span and mark it as failed."""
    span.record_exception(error)
    span.set_status(trace.Status(trace.StatusCode.ERROR, str(error)))
