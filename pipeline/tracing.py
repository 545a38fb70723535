"""Span emission for pipeline stages.

Spans are handed to a collector on a background thread; a slow or failing
collector never blocks or fails a run.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass
class SpanRecord:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_ms(self) -> float:
        return max(0.0, (self.end_time - self.start_time) * 1000)


class TraceCollector(Protocol):
    def record(self, span: SpanRecord) -> None: ...


class InMemoryCollector:
    """Keeps spans in a list. Useful for tests and the CLI's --json output."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._spans: list[SpanRecord] = []

    def record(self, span: SpanRecord) -> None:
        with self._lock:
            self._spans.append(span)

    @property
    def spans(self) -> list[SpanRecord]:
        with self._lock:
            return list(self._spans)


class Tracer:
    """Fire-and-forget span emitter.

    Args:
        collector: Destination for spans; None disables tracing entirely
        max_workers: Size of the background pool used for delivery
    """

    def __init__(self, collector: TraceCollector | None = None, max_workers: int = 1):
        self.collector = collector
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rag-trace")
            if collector is not None
            else None
        )
        self._pending: list[Future] = []
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.collector is not None

    def _deliver(self, span: SpanRecord) -> None:
        try:
            self.collector.record(span)
        except Exception as e:
            logger.debug("Trace collector failed for span %s: %s", span.name, e)

    def emit(self, span: SpanRecord) -> None:
        if self._executor is None:
            return
        try:
            future = self._executor.submit(self._deliver, span)
        except RuntimeError as e:
            logger.debug("Tracer closed, dropping span %s: %s", span.name, e)
            return
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def flush(self, timeout: float | None = 5.0) -> None:
        """Wait for spans already emitted to reach the collector."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception as e:
                logger.debug("Span delivery did not finish: %s", e)

    def close(self) -> None:
        if self._executor is not None:
            self.flush()
            self._executor.shutdown(wait=True)
            self._executor = None


NULL_TRACER = Tracer()
