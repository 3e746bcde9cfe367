"""
OpenTelemetry Tracing Setup
===========================
Optional distributed tracing for reasoning-backend calls.

Spans are exported over OTLP/HTTP when TASKFORGE_ENABLE_TRACING=true; the
engine otherwise records onto the no-op tracer.
"""

import atexit
import json
from typing import Any, Mapping, Optional

from loguru import logger
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from taskforge.config import TRACING

_provider: Optional[TracerProvider] = None
_tracer: Optional[trace.Tracer] = None


def _shutdown_provider() -> None:
    """Flush pending spans at interpreter exit."""
    if _provider is None:
        return
    try:
        _provider.shutdown()
    except Exception as e:  # exporter may already be gone at exit
        logger.debug(f"Tracer provider shutdown failed: {e}")


def setup_tracing(service_name: str = TRACING.SERVICE_NAME, endpoint: str = TRACING.OTLP_ENDPOINT) -> trace.Tracer:
    """
    Install an OTLP-exporting tracer provider and instrument httpx.

    Args:
        service_name: Service name attached to every span
        endpoint: OTLP/HTTP traces endpoint

    Returns:
        Configured tracer instance
    """
    global _provider

    _provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(_provider)

    # Backend HTTP calls (Anthropic SDK) show up as child spans
    HTTPXClientInstrumentor().instrument()
    atexit.register(_shutdown_provider)

    logger.info(f"Tracing enabled: exporting to {endpoint}")
    return trace.get_tracer(service_name)


def init_tracing() -> trace.Tracer:
    """Return the engine tracer, installing the exporter on first use when enabled."""
    global _tracer
    if _tracer is None:
        _tracer = setup_tracing() if TRACING.ENABLED else trace.get_tracer(TRACING.SERVICE_NAME)
    return _tracer


def _coerce(value: Any) -> Any:
    if isinstance(value, str):
        return value[:2048]
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [x if isinstance(x, (bool, int, float)) else str(x)[:256] for x in list(value)[:25]]
    if isinstance(value, dict):
        try:
            return json.dumps(value, sort_keys=True, default=str)[:2048]
        except (TypeError, ValueError):
            return str(value)[:2048]
    return str(value)[:2048]


def safe_set_span_attributes(span: Any, attributes: Mapping[str, Any]) -> None:
    """Best-effort attribute setter.

    Safe to call with a None or no-op span. None values are skipped since
    OpenTelemetry rejects them.
    """
    setter = getattr(span, "set_attribute", None)
    if not callable(setter):
        return
    for key, value in attributes.items():
        if not isinstance(key, str) or not key or value is None:
            continue
        try:
            setter(key, _coerce(value))
        except Exception as e:  # tracing must never break a run
            logger.debug(f"Dropping span attribute {key}: {e}")
