"""Sequential stage executor that owns cancellation checks and span emission."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from core.errors import PipelineCancelled
from pipeline.tracing import NULL_TRACER, SpanRecord, Tracer

logger = logging.getLogger(__name__)

S = TypeVar("S")


def _empty(_state: Any) -> dict[str, Any]:
    return {}


@dataclass(frozen=True)
class Stage(Generic[S]):
    """One `State -> State` step plus the span payload it reports."""

    name: str
    fn: Callable[[S], S]
    trace_input: Callable[[S], dict[str, Any]] = _empty
    trace_output: Callable[[S], dict[str, Any]] = _empty


class RagPipeline(Generic[S]):
    """Run stages in order over a state object carrying a `cancel` token.

    Cancellation is checked before every stage and once after the last one,
    so a cancelled run never returns a completed state.
    """

    def __init__(self, stages: list[Stage[S]], tracer: Tracer | None = None):
        self.stages = list(stages)
        self.tracer = tracer or NULL_TRACER

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def _check_cancelled(self, state: S, stage_name: str) -> None:
        token = getattr(state, "cancel", None)
        if token is not None and token.cancelled:
            logger.info("Run cancelled at stage boundary '%s'", stage_name)
            raise PipelineCancelled(stage_name)

    def run(self, state: S) -> S:
        for stage in self.stages:
            self._check_cancelled(state, stage.name)

            span_input = stage.trace_input(state) if self.tracer.enabled else {}
            start = time.time()
            try:
                state = stage.fn(state)
            except Exception as e:
                if self.tracer.enabled:
                    self.tracer.emit(
                        SpanRecord(
                            name=stage.name,
                            input=span_input,
                            metadata={"error": type(e).__name__, "message": str(e)},
                            start_time=start,
                            end_time=time.time(),
                        )
                    )
                raise
            end = time.time()
            logger.debug("Stage %s finished in %.1f ms", stage.name, (end - start) * 1000)

            if self.tracer.enabled:
                self.tracer.emit(
                    SpanRecord(
                        name=stage.name,
                        input=span_input,
                        output=stage.trace_output(state),
                        start_time=start,
                        end_time=end,
                    )
                )

        self._check_cancelled(state, "complete")
        return state
