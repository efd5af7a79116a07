"""
Request-scoped tracing for site evaluations.

One TraceContext per evaluation (HTTP request or import job), held in a
thread-local. It collects how long each evaluation stage took, which
outbound calls ran inside it (Google Maps, FCC, Census, Mapbox Tilequery),
and ends with a one-line summary. The full trace is stored next to the
saved site and served by /api/sites/<id>/trace.

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    with ctx.stage("geocode"):
        ...
    ctx.log_summary()
    clear_trace()
"""

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 200


@dataclass
class OutboundCall:
    service: str          # google_maps | fcc_area | census_geocoder | census_acs | mapbox
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    retried: bool = False
    stage: str = ""


@dataclass
class StageTiming:
    name: str
    elapsed_ms: int = 0
    calls: int = 0
    error: Optional[str] = None   # "ErrorClass: message"

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TraceContext:
    """Stage timings and outbound calls for a single site evaluation."""
    trace_id: str
    started: float = field(default_factory=time.time)
    stages: List[StageTiming] = field(default_factory=list)
    api_calls: List[OutboundCall] = field(default_factory=list)
    active_stage: str = ""

    @contextmanager
    def stage(self, name: str):
        """Time the block as one stage. Exceptions are recorded, then re-raised."""
        self.active_stage = name
        t0 = time.time()
        error = None
        try:
            yield
        except Exception as exc:
            error = f"{type(exc).__name__}: {str(exc)[:_ERROR_MESSAGE_LIMIT]}"
            raise
        finally:
            self._close_stage(name, t0, error)

    def _close_stage(self, name: str, t0: float, error: Optional[str]) -> None:
        timing = StageTiming(
            name=name,
            elapsed_ms=int((time.time() - t0) * 1000),
            calls=sum(1 for c in self.api_calls if c.stage == name),
            error=error,
        )
        self.stages.append(timing)
        self.active_stage = ""
        if timing.ok:
            logger.info("  [stage] trace=%s %s OK %dms calls=%d",
                        self.trace_id, name, timing.elapsed_ms, timing.calls)
        else:
            logger.info("  [stage] trace=%s %s ERR %dms calls=%d err=%s",
                        self.trace_id, name, timing.elapsed_ms, timing.calls, error)

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: float,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ) -> None:
        call = OutboundCall(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int(elapsed_ms),
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=self.active_stage,
        )
        self.api_calls.append(call)
        logger.info("  [api] trace=%s stage=%s %s/%s %dms http=%d %s%s",
                    self.trace_id, call.stage or "-", service, endpoint,
                    call.elapsed_ms, status_code, provider_status,
                    " (retry)" if retried else "")

    @property
    def outcome(self) -> str:
        """empty | success | partial | error"""
        if not self.stages:
            return "empty"
        failed = sum(1 for s in self.stages if not s.ok)
        if failed == len(self.stages):
            return "error"
        return "partial" if failed else "success"

    def summary_dict(self) -> Dict[str, Any]:
        failed = sum(1 for s in self.stages if not s.ok)
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.started) * 1000),
            "total_api_calls": len(self.api_calls),
            "retried_api_calls": sum(1 for c in self.api_calls if c.retried),
            "calls_by_service": dict(Counter(c.service for c in self.api_calls)),
            "stages_completed": len(self.stages) - failed,
            "stages_errored": failed,
            "final_outcome": self.outcome,
        }

    def log_summary(self) -> None:
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d retried=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["retried_api_calls"], s["stages_completed"], s["stages_errored"],
            s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus every stage and call; this is what gets stored with a site."""
        full = self.summary_dict()
        full["stages"] = [asdict(s) for s in self.stages]
        full["api_calls"] = [asdict(c) for c in self.api_calls]
        return full


_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _local.ctx = ctx


def clear_trace() -> None:
    _local.ctx = None


def record_api_outcome(service: str, endpoint: str, t0: float,
                       status_code: int, ok: bool, note: str = "",
                       retried: bool = False) -> None:
    """Record an outbound call to the active trace and the health monitor."""
    elapsed_ms = (time.time() - t0) * 1000
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status="OK" if ok else (note or "ERROR"),
            retried=retried,
        )
    from health_monitor import record_call
    record_call(service, ok, int(elapsed_ms), note or None)
