"""Tests for the OpenTelemetry span helper."""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from calsync.core.telemetry import init_telemetry, sync_span
from calsync.errors import ReauthRequiredError

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    """Set up an in-memory TracerProvider for every test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calsync-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestSyncSpan:
    def test_span_name_and_attributes(self, otel_provider):
        with sync_span("refresh", provider="google"):
            pass

        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calsync.refresh"
        assert span.attributes["calsync.provider"] == "google"

    def test_exception_marks_span_as_error(self, otel_provider):
        with pytest.raises(ReauthRequiredError):
            with sync_span("refresh", provider="google"):
                raise ReauthRequiredError("google")

        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_nested_spans_share_a_trace(self, otel_provider):
        with sync_span("sync"):
            with sync_span("fetch", provider="github"):
                pass

        fetch, sync = otel_provider.get_finished_spans()
        assert fetch.parent.span_id == sync.context.span_id
        assert fetch.context.trace_id == sync.context.trace_id

    async def test_decorator_form(self, otel_provider):
        @sync_span("fetch", provider="google")
        async def fetch() -> int:
            return 3

        assert await fetch() == 3
        assert await fetch() == 3
        assert [s.name for s in otel_provider.get_finished_spans()] == ["calsync.fetch"] * 2


class TestInitTelemetry:
    def test_without_endpoint_returns_tracer(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        assert init_telemetry() is not None
