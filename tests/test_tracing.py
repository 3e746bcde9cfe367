"""
Tracing Module Tests
====================
Tests for OpenTelemetry tracing setup.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import taskforge.tracing as tracing
from taskforge.config import TRACING


class TestTracingSetup:

    @pytest.mark.unit
    def test_service_name_and_endpoint(self):
        assert TRACING.SERVICE_NAME == "taskforge-orchestrator"
        assert "localhost" in TRACING.OTLP_ENDPOINT or "4318" in TRACING.OTLP_ENDPOINT

    @pytest.mark.unit
    @patch("taskforge.tracing.atexit")
    @patch("taskforge.tracing.TracerProvider")
    @patch("taskforge.tracing.OTLPSpanExporter")
    @patch("taskforge.tracing.BatchSpanProcessor")
    @patch("taskforge.tracing.trace")
    @patch("taskforge.tracing.HTTPXClientInstrumentor")
    def test_setup_tracing_creates_provider(
        self, mock_httpx, mock_trace, mock_processor, mock_exporter, mock_provider, mock_atexit
    ):
        mock_trace.get_tracer.return_value = MagicMock()

        with patch.object(tracing, "_provider", None):
            tracing.setup_tracing(endpoint="http://collector:4318/v1/traces")

        mock_provider.assert_called_once()
        mock_exporter.assert_called_once_with(endpoint="http://collector:4318/v1/traces")
        mock_trace.set_tracer_provider.assert_called_once()
        mock_httpx.return_value.instrument.assert_called_once()
        mock_atexit.register.assert_called_once()

    @pytest.mark.unit
    @patch("taskforge.tracing.setup_tracing")
    @patch("taskforge.tracing.trace")
    def test_init_tracing_disabled_uses_default_tracer(self, mock_trace, mock_setup):
        mock_tracer = MagicMock()
        mock_trace.get_tracer.return_value = mock_tracer

        disabled = MagicMock(ENABLED=False, SERVICE_NAME="svc")
        with patch.object(tracing, "_tracer", None), patch.object(tracing, "TRACING", disabled):
            assert tracing.init_tracing() is mock_tracer
            # Cached after the first call
            assert tracing.init_tracing() is mock_tracer

        mock_setup.assert_not_called()
        mock_trace.get_tracer.assert_called_once_with("svc")


class TestTracingAttributeHelpers:

    @pytest.mark.unit
    def test_noop_span(self):
        class NoopSpan:
            pass

        tracing.safe_set_span_attributes(NoopSpan(), {"k": "v"})
        tracing.safe_set_span_attributes(None, {"k": "v"})

    @pytest.mark.unit
    def test_truncates_long_strings_and_skips_none(self):
        span = MagicMock()
        tracing.safe_set_span_attributes(span, {"long": "x" * 5000, "missing": None})

        span.set_attribute.assert_called_once()
        args, _kwargs = span.set_attribute.call_args
        assert args[0] == "long"
        assert len(args[1]) == 2048

    @pytest.mark.unit
    def test_handles_non_serializable(self):
        span = MagicMock()
        tracing.safe_set_span_attributes(
            span,
            {
                "path": Path("foo"),
                "nested": {"x": object()},
                "seq": ["a" * 5000, object()],
                123: "ignored",
            },
        )
        assert span.set_attribute.call_count == 3

    @pytest.mark.unit
    def test_setter_errors_are_dropped(self):
        span = MagicMock()
        span.set_attribute.side_effect = TypeError("bad value")
        tracing.safe_set_span_attributes(span, {"k": "v"})
