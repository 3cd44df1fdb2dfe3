#Logging setup, request spans and in-process counters shared by the mediator and the API

import sys
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger


@dataclass
class TraceSpan:
    """Represents a trace span."""
    span_id: str
    operation: str
    start_time: float
    end_time: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class ObservabilityManager:
    """Tracks active spans and counters."""

    def __init__(self):
        self.active_spans: Dict[str, TraceSpan] = {}
        self.counters: Counter = Counter()
        self._lock = threading.Lock()

    def start_span(self, request_id: str, operation: str, metadata: Optional[Dict[str, Any]] = None) -> TraceSpan:
        span = TraceSpan(
            span_id=f"{request_id}_{operation}",
            operation=operation,
            start_time=time.time(),
            metadata=metadata or {}
        )
        with self._lock:
            self.active_spans[span.span_id] = span
        logger.debug(f"Started span: {span.span_id}")
        return span

    def end_span(self, span_id: str) -> Optional[TraceSpan]:
        with self._lock:
            span = self.active_spans.pop(span_id, None)
        if span is None:
            return None
        span.end_time = time.time()
        logger.debug(f"Ended span: {span_id}, duration: {span.duration:.3f}s")
        return span

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def clear_metrics(self) -> None:
        with self._lock:
            self.counters.clear()


# Global observability manager
observability = ObservabilityManager()


@contextmanager
def trace_request(request_id: str, operation: str, metadata: Optional[Dict[str, Any]] = None):
    """Context manager for tracing operations."""
    span = observability.start_span(request_id, operation, metadata)
    try:
        yield span
    finally:
        observability.end_span(span.span_id)


def increment(name: str, value: int = 1) -> None:
    observability.increment(name, value)


def get_metrics() -> Dict[str, int]:
    return observability.get_metrics()


def evaluation_incomplete(correlation_id: str, operation: str, entity_type: str,
                          instance_id: Optional[str], cause: BaseException) -> None:
    """Operational diagnostic for a request abandoned on timeout."""
    increment("request.incomplete")
    logger.bind(diagnostic="evaluation_incomplete", correlation_id=correlation_id).warning(
        f"Evaluation incomplete: {operation} {entity_type}/{instance_id} timed out ({cause})"
    )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default handler; optionally add a rotating JSON file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        logger.add(log_file, level=level.upper(), serialize=True, rotation="50 MB", retention=10, enqueue=True)
    logger.info(f"Logging configured at {level.upper()}" + (f", file {log_file}" if log_file else ""))
