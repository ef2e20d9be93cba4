"""Entra Graph Samples — Distributed tracing & custom metrics with Azure Application Insights.

Integrates OpenTelemetry for distributed tracing. Every directory operation
against Microsoft Graph becomes a trace span, enabling end-to-end visibility
in App Insights.

Custom metrics emitted:
  - entragraph.graph.pages_fetched        (counter)
  - entragraph.graph.call.duration_seconds (histogram)
  - entragraph.cae.challenges             (counter)
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from opentelemetry import metrics, trace
from opentelemetry.trace import StatusCode

from src.core.config import settings

logger = structlog.get_logger(__name__)

SERVICE_NAME = "entragraph"
SERVICE_VERSION = "0.1.0"

# Module-level tracer & meter — initialized in setup_tracing()
_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None

# ── Custom metrics (initialized in setup_tracing) ──────────
_pages_fetched_counter: metrics.Counter | None = None
_graph_call_duration_histogram: metrics.Histogram | None = None
_cae_challenge_counter: metrics.Counter | None = None

F = TypeVar("F", bound=Callable[..., Any])


def setup_tracing() -> None:
    """Initialize Azure Monitor OpenTelemetry tracing and custom metrics.

    Call once at application startup.
    """
    global _tracer, _meter
    global _pages_fetched_counter, _graph_call_duration_histogram, _cae_challenge_counter

    conn_string = settings.applicationinsights_connection_string

    if conn_string:
        try:
            from azure.monitor.opentelemetry import configure_azure_monitor

            configure_azure_monitor(connection_string=conn_string)
            logger.info("tracing.setup.complete", target="azure_app_insights")
        except ImportError:
            logger.warning(
                "tracing.setup.skipped",
                reason="azure-monitor-opentelemetry not installed",
            )
        except Exception as e:
            logger.warning("tracing.setup.failed", error=str(e))
    else:
        logger.info(
            "tracing.setup.skipped",
            reason="no connection string configured",
        )

    _tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)
    _meter = metrics.get_meter(SERVICE_NAME, SERVICE_VERSION)

    _pages_fetched_counter = _meter.create_counter(
        name="entragraph.graph.pages_fetched",
        description="Next-page requests issued while walking Graph collections",
        unit="pages",
    )

    _graph_call_duration_histogram = _meter.create_histogram(
        name="entragraph.graph.call.duration_seconds",
        description="Duration of directory operations against Microsoft Graph",
        unit="s",
    )

    _cae_challenge_counter = _meter.create_counter(
        name="entragraph.cae.challenges",
        description="Continuous access evaluation claims challenges received",
        unit="challenges",
    )


def get_tracer() -> trace.Tracer:
    """Get the configured tracer, initializing if needed."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)
    return _tracer


def get_meter() -> metrics.Meter:
    """Get the configured meter, initializing if needed."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(SERVICE_NAME, SERVICE_VERSION)
    return _meter


# ── Metric recording helpers ─────────────────────────────


def record_pages_fetched(count: int) -> None:
    if _pages_fetched_counter is not None and count:
        _pages_fetched_counter.add(count)


def record_graph_call_duration(duration_seconds: float, operation: str = "") -> None:
    if _graph_call_duration_histogram is not None:
        _graph_call_duration_histogram.record(
            duration_seconds,
            attributes={"entragraph.graph.operation": operation},
        )


def record_cae_challenge() -> None:
    if _cae_challenge_counter is not None:
        _cae_challenge_counter.add(1)
    logger.info("metric.cae_challenge.recorded")


# ── Trace decorator ──────────────────────────────────────


def _outcome_status(result: Any) -> str:
    if getattr(result, "challenged", False):
        return "challenged"
    if getattr(result, "error", None) is not None:
        return "failed"
    return "success"


def trace_graph_call(operation: str) -> Callable[[F], F]:
    """Decorator that wraps a Graph directory operation in an OpenTelemetry span.

    Records: operation name, duration, outcome status (success, challenged,
    failed), item count for list results, and any raised errors.

    Usage:
        @trace_graph_call("get_users")
        async def get_users(self) -> GraphOutcome[list[User]]:
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer()
            with tracer.start_as_current_span(
                name=f"graph.{operation}",
                attributes={"entragraph.graph.operation": operation},
            ) as span:
                start_time = time.monotonic()
                try:
                    result = await func(*args, **kwargs)
                    duration_ms = (time.monotonic() - start_time) * 1000
                    outcome = _outcome_status(result)

                    span.set_attribute("entragraph.graph.duration_ms", duration_ms)
                    span.set_attribute("entragraph.graph.status", outcome)

                    value = getattr(result, "value", None)
                    if isinstance(value, list):
                        span.set_attribute("entragraph.graph.item_count", len(value))

                    span.set_status(StatusCode.OK)
                    record_graph_call_duration(duration_ms / 1000, operation)

                    logger.info(
                        f"graph.{operation}.traced",
                        operation=operation,
                        duration_ms=round(duration_ms, 2),
                        status=outcome,
                    )
                    return result

                except Exception as e:
                    duration_ms = (time.monotonic() - start_time) * 1000
                    span.set_attribute("entragraph.graph.duration_ms", duration_ms)
                    span.set_attribute("entragraph.graph.status", "error")
                    span.set_attribute("entragraph.graph.error", str(e))
                    span.set_status(StatusCode.ERROR, str(e))
                    span.record_exception(e)

                    logger.error(
                        f"graph.{operation}.error",
                        operation=operation,
                        duration_ms=round(duration_ms, 2),
                        error=str(e),
                    )
                    raise

        return wrapper  # type: ignore[return-value]

    return decorator
