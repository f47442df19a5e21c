"""
Per-run tracing for score computations.

A thread-local TraceContext records:
  - Per-component timing (component name, elapsed_ms, whether a fallback
    value was substituted, error class)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status)
  - A one-line summary at the end of the run

Usage:
    ctx = TraceContext(trace_id=f"property-{property_id}")
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In API clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Component calculators run in pool threads; the orchestrator hands the
parent context to each thread with set_trace().  list.append is atomic
under the GIL, so no lock is needed.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound HTTP call (places, elevation, system of record, narrative)."""
    service: str
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""


@dataclass
class ComponentRecord:
    """One component score computation."""
    component: str
    elapsed_ms: int
    value: Optional[float] = None
    fallback: bool = False
    error_class: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for one property's score run."""
    trace_id: str
    started: float = field(default_factory=time.time)
    components: List[ComponentRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)

    def record_component(
        self,
        component: str,
        start_ts: float,
        value: Optional[float] = None,
        fallback: bool = False,
        error_class: str = "",
    ):
        rec = ComponentRecord(
            component=component,
            elapsed_ms=int((time.time() - start_ts) * 1000),
            value=value,
            fallback=fallback,
            error_class=error_class,
        )
        self.components.append(rec)
        logger.debug(
            "  [component] trace=%s %s=%s %dms%s",
            self.trace_id,
            component,
            "-" if value is None else f"{value:.2f}",
            rec.elapsed_ms,
            f" fallback err={error_class}" if fallback else "",
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        self.api_calls.append(APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
        ))
        logger.debug(
            "  [api] trace=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id, service, endpoint, elapsed_ms, status_code, provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        fallbacks = [c.component for c in self.components if c.fallback]
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.started) * 1000),
            "total_api_calls": len(self.api_calls),
            "components": {c.component: c.value for c in self.components},
            "fallbacks": fallbacks,
            "final_outcome": "degraded" if fallbacks else "success",
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d fallbacks=%s outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            ",".join(s["fallbacks"]) or "-",
            s["final_outcome"],
        )


_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
