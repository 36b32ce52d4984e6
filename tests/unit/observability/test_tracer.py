"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

from opentelemetry.trace import SpanKind as OtelSpanKind

from ticketflow.observability import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    SpanKindEnum,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        assert isinstance(NullTracer(), Tracer)

    def test_otel_tracer_implements_protocol(self):
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)

    def test_mock_tracer_implements_protocol(self):
        assert isinstance(MockTracer(), Tracer)


class TestNullTracer:
    def test_disabled(self):
        assert NullTracer().enabled is False

    def test_span_yields_none(self):
        with NullTracer().span_with_kind("ticketflow.publish t", SpanKindEnum.PRODUCER) as span:
            assert span is None


class TestOpenTelemetryTracer:
    def test_enabled(self):
        assert OpenTelemetryTracer(__name__).enabled is True

    def test_span_without_sdk_is_usable(self):
        """Without an SDK installed the API hands out non-recording spans."""
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span_with_kind(
            "ticketflow.process t",
            SpanKindEnum.CONSUMER,
            attributes={"messaging.system": "memory"},
        ) as span:
            span.set_attribute("ticketflow.outcome", "acknowledged")


class TestMockTracer:
    def test_records_spans(self):
        tracer = MockTracer()

        with tracer.span_with_kind("a", SpanKindEnum.PRODUCER, {"k": "v"}):
            pass
        with tracer.span_with_kind("b"):
            pass

        assert tracer.span_names == ["a", "b"]
        assert tracer.spans[0] == RecordedSpan("a", SpanKindEnum.PRODUCER, {"k": "v"})
        assert tracer.spans[1].kind is SpanKindEnum.INTERNAL

    def test_keeps_parent_context(self):
        tracer = MockTracer()
        parent = object()

        with tracer.span_with_kind("ticketflow.process t", SpanKindEnum.CONSUMER, context=parent):
            pass

        assert tracer.spans[0].parent is parent
        assert tracer.of_kind(SpanKindEnum.CONSUMER) == tracer.spans
        assert tracer.of_kind(SpanKindEnum.PRODUCER) == []

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span_with_kind("a"):
            pass

        tracer.clear()

        assert tracer.spans == []


class TestCreateTracer:
    def test_enabled_returns_otel_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=True), OpenTelemetryTracer)

    def test_disabled_returns_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)


class TestSpanKind:
    def test_maps_to_otel_kinds(self):
        assert SpanKindEnum.PRODUCER.to_otel() is OtelSpanKind.PRODUCER
        assert SpanKindEnum.CONSUMER.to_otel() is OtelSpanKind.CONSUMER
        assert SpanKindEnum.INTERNAL.to_otel() is OtelSpanKind.INTERNAL
