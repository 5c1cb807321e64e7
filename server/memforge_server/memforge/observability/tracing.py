"""Observability for the memforge core.

Three pieces, all usable without a collector:

* in-process counters for the search and extraction paths (``record_metric``),
* ``log_with_context`` for log lines keyed by user / memory,
* ``span`` for OpenTelemetry spans once ``init_otel`` found an endpoint;
  before that (or without the SDK installed) it is a no-op.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from memforge import config as cfg

logger = logging.getLogger(__name__)

_tracer: Optional[Any] = None

# ── Counters ─────────────────────────────────────────────────────────

_COUNTERS = (
    "search_count",
    "search_latency_ms_total",
    "search_text_arm_fallback_count",
    "search_vector_arm_fallback_count",
    "search_hydration_dropped",
    "rerank_candidate_failure",
    "extraction_started",
    "extraction_done",
    "extraction_failed",
    "extraction_skipped",
    "extraction_retried",
    "entity_created",
    "entity_matched",
)

_metrics: dict[str, float] = dict.fromkeys(_COUNTERS, 0)


def record_metric(name: str, value: float = 1.0) -> None:
    _metrics[name] = _metrics.get(name, 0) + value


def get_metrics() -> dict[str, float]:
    """Snapshot of the counters."""
    return dict(_metrics)


def reset_metrics() -> None:
    """Zero the known counters and drop ad-hoc ones (testing helper)."""
    _metrics.clear()
    _metrics.update(dict.fromkeys(_COUNTERS, 0))


# ── Logging ──────────────────────────────────────────────────────────

def configure_logging(level: str | None = None) -> None:
    """Apply ``LOG_LEVEL`` to the root logger."""
    logging.basicConfig(
        level=(level or cfg.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def log_with_context(
    level: int,
    message: str,
    *,
    user_id: str = "",
    memory_id: str = "",
    **extra: Any,
) -> None:
    """Log *message* followed by the correlation fields that are set."""
    fields = {k: v for k, v in {"user_id": user_id, "memory_id": memory_id, **extra}.items() if v != ""}
    logger.log(level, "%s | %s", message, fields)


# ── Tracing ──────────────────────────────────────────────────────────

@contextmanager
def span(name: str, **attributes: Any) -> Iterator[Optional[Any]]:
    """Wrap a block in an OTel span; yields ``None`` when tracing is off."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(f"memforge.{key}", value)
        yield current


def init_otel(service_name: str | None = None) -> bool:
    """Install an OTLP span exporter if ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.

    Returns whether tracing is active afterwards.
    """
    global _tracer

    endpoint = cfg.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        logger.info("OTEL endpoint not configured; tracing disabled.")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning("OpenTelemetry SDK not installed; tracing disabled.")
        return False

    try:
        resource = Resource.create({"service.name": service_name or cfg.OTEL_SERVICE_NAME})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _tracer = trace.get_tracer("memforge")
    except Exception:
        logger.exception("OpenTelemetry initialisation failed")
        return False

    logger.info("OpenTelemetry tracing initialised (endpoint=%s)", endpoint)
    return True
