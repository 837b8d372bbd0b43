#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, SQLite access and
key poller spans, plus the observable gauges that expose how many feeds are
currently failing and how long the last poll took.

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-poller)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print spans and metrics to stdout
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional
import asyncio

from opentelemetry import metrics, trace
from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None

_gauge_lock = threading.Lock()
_gauges_registered = False
_feed_snapshot: Optional[Callable[[], Dict[str, Any]]] = None

_logger = logging.getLogger(__name__)


def _telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing, metrics and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider, _meter_provider
    if _telemetry_disabled():
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-poller")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)
        console_export = os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true"

        # If a provider was already set by external auto-instrumentation, reuse it
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)
            if console_export:
                provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            trace.set_tracer_provider(provider)
        _provider = provider

        readers = []
        if console_export:
            readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
        existing_meter = metrics.get_meter_provider()
        if isinstance(existing_meter, MeterProvider):
            _meter_provider = existing_meter
        else:
            _meter_provider = MeterProvider(resource=resource, metric_readers=readers)
            metrics.set_meter_provider(_meter_provider)

        _logger.info(
            "Telemetry initialized (service=%s, console_export=%s)",
            svc,
            console_export,
        )

        # Instrument libraries
        try:
            AioHttpClientInstrumentor().instrument()
        except Exception as e:
            _logger.debug("aiohttp instrumentation unavailable: %s", e)
        try:
            # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
            LoggingInstrumentor().instrument()
        except Exception as e:
            _logger.debug("logging instrumentation unavailable: %s", e)
        try:
            SQLite3Instrumentor().instrument()
        except Exception as e:
            _logger.debug("sqlite3 instrumentation unavailable: %s", e)

        _initialized = True

        # Ensure spans flush on interpreter exit for short-lived commands
        def _shutdown():
            try:
                if _provider:
                    _provider.shutdown()
                if _meter_provider:
                    _meter_provider.shutdown()
            except Exception:
                pass

        atexit.register(_shutdown)


def get_tracer(name: str = "feed-poller"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def get_meter(name: str = "feed-poller"):
    """Get the OpenTelemetry meter for a named subsystem."""
    return metrics.get_meter(name)


def register_feed_gauges(snapshot: Callable[[], Dict[str, Any]], meter_name: str = "reader") -> bool:
    """Export feed counts and the last poll duration as observable gauges.

    The instruments are created once per process. Later calls only swap the
    snapshot the gauges read from, so the most recently built reader is the
    one being reported.

    Args:
        snapshot: Callable returning a mapping with `feeds_count`,
                  `feeds_failing_http`, `feeds_failing_parsing` and
                  `last_fetch_ms`.
        meter_name: Meter to register the gauges on.

    Returns:
        True if this call created the instruments.
    """
    global _gauges_registered, _feed_snapshot
    with _gauge_lock:
        _feed_snapshot = snapshot
        if _gauges_registered:
            return False
        _gauges_registered = True

    meter = get_meter(meter_name)

    def _values() -> Dict[str, Any]:
        source = _feed_snapshot
        return source() if source else {}

    def _count(options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(_values().get("feeds_count", 0))

    def _failing(options: CallbackOptions) -> Iterable[Observation]:
        values = _values()
        yield Observation(values.get("feeds_failing_http", 0), {"reason": "http"})
        yield Observation(values.get("feeds_failing_parsing", 0), {"reason": "parsing"})

    def _fetch_ms(options: CallbackOptions) -> Iterable[Observation]:
        value = _values().get("last_fetch_ms")
        if value is not None:
            yield Observation(value)

    meter.create_observable_gauge(
        "feeds.count",
        callbacks=[_count],
        description="The number of feeds being polled",
    )
    meter.create_observable_gauge(
        "feeds.failing",
        callbacks=[_failing],
        description="The number of feeds currently failing, by reason",
    )
    meter.create_observable_gauge(
        "feeds.fetch_ms",
        callbacks=[_fetch_ms],
        unit="ms",
        description="Time taken by the most recent poll cycle",
    )
    return True


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to span_name or 'feed-poller')
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "feed-poller"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span:
                return
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    dyn = attr_from_args(*args, **kwargs) or {}
                    for k, v in dyn.items():
                        span.set_attribute(k, v)
            except Exception:
                # Never break the app on attribute setting
                pass

        if asyncio.iscoroutinefunction(func):

            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        if span:
                            span.record_exception(e)
                            span.set_status(Status(StatusCode.ERROR))
                        raise

            _aw.__name__ = func.__name__
            _aw.__doc__ = func.__doc__
            _aw.__qualname__ = getattr(func, "__qualname__", func.__name__)
            return _aw
        else:

            def _w(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return func(*args, **kwargs)
                    except Exception as e:
                        if span:
                            span.record_exception(e)
                            span.set_status(Status(StatusCode.ERROR))
                        raise

            _w.__name__ = func.__name__
            _w.__doc__ = func.__doc__
            _w.__qualname__ = getattr(func, "__qualname__", func.__name__)
            return _w

    return _decorator
