"""
Observability utilities for ticketflow.

Tracing goes through the composition-based Tracer in
ticketflow.observability.tracer; span attribute names live in
ticketflow.observability.attributes. Trace context travels between
participants inside envelope headers.
"""

from ticketflow.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
]
