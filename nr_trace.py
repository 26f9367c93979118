"""
Generation-scoped tracing for the aggregation pipeline.

Provides a thread-local TraceContext that records:
  - Per-source outcome (source name, elapsed_ms, attempts, error class)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status, provider status)
  - End-of-run summary (total_elapsed, total_api_calls, outcome)

Usage:
    from nr_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the pipeline run (one context per generation):
    ctx = TraceContext(trace_id="gen-7", generation=7)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In the HTTP clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)

Query threads do not inherit thread-locals; the pipeline calls
set_trace(parent) at the top of each submitted task.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call (Overpass or TomTom)."""
    service: str          # "overpass" | "tomtom"
    endpoint: str         # feature kind or "flow_segment"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # e.g. "rate_limit", "parse_error", "no_data"


@dataclass
class SourceRecord:
    """Outcome of one logical source for a generation."""
    source: str
    elapsed_ms: int = 0
    attempts: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for one pipeline generation."""
    trace_id: str
    generation: int = 0
    run_start: float = field(default_factory=time.time)
    sources: List[SourceRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    model_version: str = ""
    discarded: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_source(
        self,
        source: str,
        elapsed_ms: int,
        attempts: int = 1,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ) -> bool:
        """Record the outcome of one source.

        A source has one outcome per generation: the first record wins and
        later ones are dropped.  Returns False when the record was dropped.
        """
        rec = SourceRecord(
            source=source,
            elapsed_ms=elapsed_ms,
            attempts=attempts,
            skipped=skipped,
            error_class=error_class,
            error_message=error_message,
        )
        with self._lock:
            if any(s.source == source for s in self.sources):
                return False
            self.sources.append(rec)

        status = "SKIP" if skipped else ("ERR" if error_class else "OK")
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [source] trace=%s %s %s %dms attempts=%d%s",
            self.trace_id,
            source,
            status,
            elapsed_ms,
            attempts,
            err_info,
        )
        return True

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status or "-",
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.run_start) * 1000)
        with self._lock:
            sources = list(self.sources)
            calls = list(self.api_calls)

        ok = [s for s in sources if not s.skipped and not s.error_class]
        skipped = [s for s in sources if s.skipped]
        errored = [s for s in sources if s.error_class and not s.skipped]

        if self.discarded:
            outcome = "discarded"
        elif errored and not ok:
            outcome = "error"
        elif not ok and not errored:
            outcome = "empty"
        elif skipped or errored:
            outcome = "partial"
        else:
            outcome = "success"

        result = {
            "trace_id": self.trace_id,
            "generation": self.generation,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(calls),
            "sources_ok": len(ok),
            "sources_skipped": len(skipped),
            "sources_errored": len(errored),
            "final_outcome": outcome,
        }
        if self.model_version:
            result["model_version"] = self.model_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s gen=%d total_ms=%d api_calls=%d "
            "ok=%d skipped=%d errored=%d outcome=%s",
            s["trace_id"],
            s["generation"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["sources_ok"],
            s["sources_skipped"],
            s["sources_errored"],
            s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Complete trace data for the debug endpoint."""
        summary = self.summary_dict()
        with self._lock:
            summary["sources"] = [
                {
                    "source": s.source,
                    "elapsed_ms": s.elapsed_ms,
                    "attempts": s.attempts,
                    "skipped": s.skipped,
                    "error": (
                        f"{s.error_class}: {s.error_message}"
                        if s.error_class else None
                    ),
                }
                for s in self.sources
            ]
            summary["api_calls"] = [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "provider_status": c.provider_status,
                }
                for c in self.api_calls
            ]
        return summary


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
