"""
Request-scoped tracing for HomeFind search requests.

A thread-local TraceContext records:
  - Per-stage timing for the search pipeline (text_match, geocode, nearby)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status code)
  - One summary log line per request

Usage:
    from hf_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the route handler (app.py):
    ctx = TraceContext(trace_id=g.request_id)
    set_trace(ctx)
    try:
        ...
    finally:
        ctx.log_summary()
        clear_trace()

    # In code that does work worth timing:
    trace = get_trace()
    if trace:
        with trace.stage("geocode"):
            ...
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound HTTP call (LocationIQ, Resend)."""
    service: str          # "locationiq"
    endpoint: str         # "geocode" | "autocomplete"
    elapsed_ms: int
    status_code: int
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    result_count: Optional[int] = None
    error_class: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str) -> Iterator[StageRecord]:
        """Time a block as one stage. Exceptions are recorded and re-raised.

        The yielded record can be given a result_count by the caller.
        """
        rec = StageRecord(stage_name=name)
        previous = self._current_stage
        self._current_stage = name
        t0 = time.time()
        try:
            yield rec
        except Exception as exc:
            rec.error_class = type(exc).__name__
            raise
        finally:
            rec.elapsed_ms = int((time.time() - t0) * 1000)
            rec.api_calls_made = sum(1 for c in self.api_calls if c.stage == name)
            self._current_stage = previous
            self.stages.append(rec)
            logger.info(
                "  [stage] trace=%s %s %s %dms api_calls=%d results=%s",
                self.trace_id,
                name,
                "ERR" if rec.error_class else "OK",
                rec.elapsed_ms,
                rec.api_calls_made,
                "-" if rec.result_count is None else rec.result_count,
            )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        if errored:
            outcome = "error"
        elif not self.stages:
            outcome = "empty"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages": [s.stage_name for s in self.stages],
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d stages=%s "
            "errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            ",".join(s["stages"]) or "-",
            s["stages_errored"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
