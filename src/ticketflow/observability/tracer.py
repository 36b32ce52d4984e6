"""
Tracers handed to publishers and subscribers.

A component never talks to OpenTelemetry directly: it receives a Tracer and
opens spans through ``span_with_kind``. Two spans exist per envelope hop:

- ``ticketflow.publish <topic>`` (PRODUCER) around the broker append
- ``ticketflow.process <topic>`` (CONSUMER) around handler delivery, parented
  on the context carried in the envelope headers

Example:
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span_with_kind("ticketflow.publish trips.updated", SpanKindEnum.PRODUCER):
    ...     ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Span
from opentelemetry.trace import SpanKind as OtelSpanKind


class SpanKindEnum(Enum):
    """Role of a span in a message hop."""

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"

    def to_otel(self) -> OtelSpanKind:
        return getattr(OtelSpanKind, self.name)


@runtime_checkable
class Tracer(Protocol):
    """
    Something that opens spans.

    Implementations:
    - NullTracer: tracing disabled
    - OpenTelemetryTracer: spans from the globally configured provider
    - MockTracer: records spans for assertions
    """

    @property
    def enabled(self) -> bool:
        """True if spans are real and trace context should be propagated."""
        ...

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span.

        Args:
            name: Span name
            kind: PRODUCER for appends, CONSUMER for deliveries
            attributes: Initial span attributes
            context: Parent context extracted from envelope headers

        Returns:
            Context manager yielding the span, or None when nothing records
        """
        ...


class NullTracer:
    """Tracer used when tracing is disabled; every span is None."""

    @property
    def enabled(self) -> bool:
        return False

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Iterator[None]:
        yield None


class OpenTelemetryTracer:
    """
    Opens spans through ``opentelemetry.trace``.

    Without an SDK configured the API returns non-recording spans, so the
    tracer is always safe to use.

    Args:
        tracer_name: Instrumentation scope, usually the module ``__name__``
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    @property
    def enabled(self) -> bool:
        return True

    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            context=context,
            kind=kind.to_otel(),
            attributes=attributes or {},
        )


@dataclass(frozen=True)
class RecordedSpan:
    """A span opened on a MockTracer."""

    name: str
    kind: SpanKindEnum
    attributes: dict[str, Any] = field(default_factory=dict)
    parent: Any | None = None


class MockTracer:
    """
    Tracer for tests that records every span it opens.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span_with_kind("ticketflow.process trips.updated"):
        ...     pass
        >>> tracer.span_names
        ['ticketflow.process trips.updated']
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def of_kind(self, kind: SpanKindEnum) -> list[RecordedSpan]:
        return [span for span in self.spans if span.kind is kind]

    def clear(self) -> None:
        self.spans.clear()

    @contextlib.contextmanager
    def span_with_kind(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Iterator[None]:
        self.spans.append(RecordedSpan(name, kind, dict(attributes or {}), context))
        yield None


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """OpenTelemetryTracer when tracing is enabled, NullTracer otherwise."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
]
