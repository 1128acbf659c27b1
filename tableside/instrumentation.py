"""
OpenTelemetry instrumentation for REST calls and payment bookkeeping
"""
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
import functools
import json
import logging

tracer = trace.get_tracer("tableside", "1.0.0")
logger = logging.getLogger(__name__)


def _preview(value):
    try:
        return json.dumps(value, default=str)[:500]
    except (TypeError, ValueError):
        return str(value)[:500]


def instrument_operation(operation_name):
    """Decorator wrapping an async operation in an OpenTelemetry span"""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with tracer.start_as_current_span(
                f"tableside {operation_name}",
                kind=trace.SpanKind.INTERNAL
            ) as span:
                span.set_attribute("tableside.operation", operation_name)
                span.add_event("operation_started", {
                    "operation.name": operation_name,
                    "operation.input": _preview(kwargs or args[1:])
                })
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.add_event("operation_failed", {
                        "operation.name": operation_name,
                        "error": str(e),
                        "error_type": type(e).__name__
                    })
                    span.set_attribute("operation.status", "error")
                    span.set_attribute("operation.error_type", type(e).__name__)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    logger.debug(f"[TRACE] {operation_name} failed: {e}")
                    raise

                span.add_event("operation_completed", {
                    "operation.name": operation_name,
                    "operation.output": _preview(result)
                })
                span.set_attribute("operation.status", "success")
                span.set_status(Status(StatusCode.OK))
                return result
        return wrapper
    return decorator
