"""
Location-triggered aggregation pipeline.

Each call to set_point_of_interest() starts a new *generation*:

  1. The current result is replaced with a fresh ``loading`` result.
  2. roads / buildings / residential Overpass queries run concurrently.
  3. As soon as residential resolves, the density score is computed and
     the traffic query starts (it needs density to be worth asking).
  4. When speed and density are both known the classifier picks a config.
  5. The terminal result is published only if no newer generation has
     started in the meantime.

Each source fails independently.  A failed source is named in the
result; it never aborts its siblings and never gets a substitute value.

Cancellation is discard-on-arrival: superseded runs stop waiting at once
and free their orchestration worker, but their in-flight HTTP calls may
still finish in the background.  The generation check and the write to the
result slot happen under one lock, so a stale result can never be published.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set

from models import (
    ALL_SOURCES,
    SOURCE_BUILDINGS,
    SOURCE_RESIDENTIAL,
    SOURCE_ROADS,
    SOURCE_TRAFFIC,
    FeatureKind,
    PipelineResult,
    PipelineStatus,
    PointOfInterest,
    SourceError,
    SourceUnavailable,
)
from nr_classifier import CLASSIFIER_MODEL, ClassifierModel, DensityEstimator, classify
from nr_trace import TraceContext, clear_trace, get_trace, set_trace
from overpass_http import OverpassHTTPClient
from settings import PipelineSettings
from traffic_flow import TrafficFlowClient

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineResult], None]


class AggregationPipeline:
    """Owns the single current PipelineResult and the generation counter.

    Clients are injectable; by default they are built from *settings*.
    Listeners are called synchronously, in publication order, while the
    publication lock is held.  They must be quick and must not block on
    other threads that use this pipeline.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        geo_client=None,
        traffic_client=None,
        model: Optional[ClassifierModel] = None,
    ):
        self.settings = settings or PipelineSettings()
        self._geo = geo_client or OverpassHTTPClient.from_settings(self.settings)
        self._traffic = traffic_client or TrafficFlowClient.from_settings(self.settings)
        self._estimator = DensityEstimator(self.settings.density_divisor)
        self._model = model or CLASSIFIER_MODEL

        self._lock = threading.RLock()
        self._generation = 0
        self._result = PipelineResult.idle()
        self._trace: Optional[TraceContext] = None
        self._wake: Optional[threading.Event] = None
        self._listeners: List[Listener] = []
        self._runner = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_concurrent_runs),
            thread_name_prefix="nr-pipeline",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def current_result(self) -> PipelineResult:
        with self._lock:
            return self._result

    def current_trace(self) -> Optional[TraceContext]:
        with self._lock:
            return self._trace

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def set_point_of_interest(self, lat: Any, lon: Any) -> "Future[Optional[PipelineResult]]":
        """Supersede the current point and start a new generation.

        Raises ValueError for non-numeric coordinates, before anything
        changes.  The returned future resolves to the published terminal
        result, or None when the run was superseded.
        """
        point = PointOfInterest.normalized(lat, lon)
        with self._lock:
            self._generation += 1
            generation = self._generation
            if self._wake is not None:
                # superseded run stops waiting
                self._wake.set()
            wake = threading.Event()
            self._wake = wake
            trace = TraceContext(
                trace_id=f"gen-{generation}",
                generation=generation,
                model_version=self._model.version,
            )
            self._trace = trace
            self._set_result(PipelineResult.loading(point, generation))

        logger.info(
            "[pipeline] gen=%d fetching for (%.5f, %.5f)",
            generation, point.lat, point.lon,
        )
        return self._runner.submit(self._run, generation, point, trace, wake)

    def close(self) -> None:
        self._runner.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Generation bookkeeping
    # ------------------------------------------------------------------

    def _is_stale(self, generation: int) -> bool:
        with self._lock:
            return generation != self._generation

    def _publish(self, generation: int, result: PipelineResult) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self._set_result(result)
            return True

    def _set_result(self, result: PipelineResult) -> None:
        # Caller holds self._lock
        self._result = result
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("[pipeline] listener failed for gen=%d", result.generation)

    def _discard(self, generation: int, trace: TraceContext) -> None:
        trace.discarded = True
        logger.info(
            "[pipeline] gen=%d superseded by gen=%d, result discarded",
            generation, self.generation,
        )
        trace.log_summary()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _run(
        self,
        generation: int,
        point: PointOfInterest,
        trace: TraceContext,
        wake: threading.Event,
    ) -> Optional[PipelineResult]:
        set_trace(trace)
        try:
            if self._is_stale(generation):
                self._discard(generation, trace)
                return None
            try:
                result = self._aggregate(generation, point, trace, wake)
            except Exception as e:
                logger.exception("[pipeline] gen=%d aggregation crashed", generation)
                result = PipelineResult(
                    status=PipelineStatus.FAILED,
                    generation=generation,
                    point=point,
                    reason=f"internal error: {type(e).__name__}",
                )
            if result is None or not self._publish(generation, result):
                self._discard(generation, trace)
                return None
            logger.info(
                "[pipeline] gen=%d %s config=%s failed=%s",
                generation,
                result.status.value,
                result.config.key if result.config else "-",
                ",".join(sorted(result.failed_sources)) or "-",
            )
            trace.log_summary()
            return result
        finally:
            clear_trace()

    def _aggregate(
        self,
        generation: int,
        point: PointOfInterest,
        trace: TraceContext,
        wake: threading.Event,
    ) -> Optional[PipelineResult]:
        """Run every query for one generation.  None means it went stale."""
        errors: Dict[str, str] = {}
        skipped: Set[str] = set()
        deadlines: Dict[str, Optional[float]] = {}

        pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix=f"nr-gen{generation}")
        try:
            futures: Dict[str, Future] = {}
            for kind in FeatureKind:
                futures[kind.value] = self._submit(
                    pool, trace, deadlines, wake, generation, kind.value,
                    self._geo.fetch_features, point, kind,
                )

            residential = self._await(generation, SOURCE_RESIDENTIAL, futures, deadlines, errors, wake)
            if self._is_stale(generation):
                return None

            density = None
            if residential is not None:
                density = self._estimator.estimate(residential)

            speed = None
            if density is None:
                skipped.add(SOURCE_TRAFFIC)
                trace.record_source(SOURCE_TRAFFIC, 0, attempts=0, skipped=True)
            else:
                futures[SOURCE_TRAFFIC] = self._submit(
                    pool, trace, deadlines, wake, generation, SOURCE_TRAFFIC,
                    self._traffic.fetch_speed, point,
                )
                speed = self._await(generation, SOURCE_TRAFFIC, futures, deadlines, errors, wake)

            roads = self._await(generation, SOURCE_ROADS, futures, deadlines, errors, wake)
            buildings = self._await(generation, SOURCE_BUILDINGS, futures, deadlines, errors, wake)
        finally:
            # Timed-out queries keep running in the background; nobody reads them.
            pool.shutdown(wait=False, cancel_futures=True)

        if self._is_stale(generation):
            return None

        config = None
        if speed is not None and density is not None:
            config = classify(speed, density, self._model)

        failed = frozenset(errors)
        attempted = set(ALL_SOURCES) - skipped
        reason = None
        if failed and failed >= attempted:
            status = PipelineStatus.FAILED
            reason = "all sources failed: " + ", ".join(sorted(failed))
        elif failed or skipped:
            status = PipelineStatus.PARTIAL
        else:
            status = PipelineStatus.COMPLETE

        return PipelineResult(
            status=status,
            generation=generation,
            point=point,
            roads=roads,
            buildings=buildings,
            density_score=density,
            traffic_speed=speed,
            config=config,
            failed_sources=failed,
            skipped_sources=frozenset(skipped),
            errors=errors,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Per-query helpers
    # ------------------------------------------------------------------

    def _submit(self, pool, trace, deadlines, wake, generation, source, fn, *args) -> Future:
        timeout = self.settings.query_timeout_s
        deadlines[source] = None if timeout is None else time.monotonic() + timeout
        future = pool.submit(self._traced, trace, self._fetch_with_retry, generation, source, fn, *args)
        future.add_done_callback(lambda _f: wake.set())
        return future

    @staticmethod
    def _traced(trace: TraceContext, fn, *args):
        """Run *fn* in a pool thread with the generation's trace attached."""
        set_trace(trace)
        try:
            return fn(*args)
        finally:
            clear_trace()

    def _await(self, generation, source, futures, deadlines, errors, wake):
        """Wait for one query; record its failure and return None on error.

        Also returns None, without recording anything, as soon as the
        generation is superseded.  *wake* is set whenever any query of this
        generation finishes or a newer generation starts.
        """
        future = futures[source]
        deadline = deadlines.get(source)
        while True:
            wake.clear()
            if future.done() or self._is_stale(generation):
                break
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            wake.wait(remaining)

        if not future.done():
            if self._is_stale(generation):
                return None
            if self._time_out(generation, source, future):
                errors[source] = f"SourceUnavailable: {self._timeout_message()}"
                return None
            # The query settled its trace record just as the deadline passed

        try:
            return future.result()
        except SourceError as e:
            errors[source] = f"{type(e).__name__}: {e}"
            logger.warning(
                "[pipeline] gen=%d %s failed: %s: %s",
                generation, source, type(e).__name__, e,
            )
        except Exception as e:
            errors[source] = f"{type(e).__name__}: {e}"
            logger.error(
                "[pipeline] gen=%d %s query raised unexpectedly",
                generation, source, exc_info=(type(e), e, e.__traceback__),
            )
        return None

    def _timeout_message(self) -> str:
        return f"no response within {self.settings.query_timeout_s}s"

    def _time_out(self, generation: int, source: str, future: Future) -> bool:
        """Abandon a query that missed its deadline.

        The trace keeps the first outcome per source, so the abandoned
        thread's own record is dropped if it finishes later.  Returns False
        when that thread recorded first.
        """
        future.cancel()
        trace = get_trace()
        if trace and not trace.record_source(
            source,
            int(self.settings.query_timeout_s * 1000),
            error_class="SourceUnavailable",
            error_message=self._timeout_message(),
        ):
            return False
        logger.warning("[pipeline] gen=%d %s timed out", generation, source)
        return True

    def _fetch_with_retry(self, generation: int, source: str, fn, *args):
        """Call *fn*, retrying retryable SourceUnavailable failures.

        Runs in a pool thread.  Retries stop as soon as the generation is
        superseded.  MalformedResponse and NoData are never retried.
        """
        if source == SOURCE_TRAFFIC:
            max_retries = self.settings.traffic_max_retries
        else:
            max_retries = self.settings.geo_max_retries

        t0 = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                value = fn(*args)
            except SourceUnavailable as e:
                if e.retryable and attempt <= max_retries and not self._is_stale(generation):
                    sleep_time = self.settings.retry_backoff_s * attempt
                    logger.info(
                        "[pipeline] gen=%d %s unavailable (attempt %d/%d), sleeping %.1fs before retry: %s",
                        generation, source, attempt, 1 + max_retries, sleep_time, e,
                    )
                    time.sleep(sleep_time)
                    continue
                _record_source(source, t0, attempt, e)
                raise
            except Exception as e:
                _record_source(source, t0, attempt, e)
                raise
            _record_source(source, t0, attempt)
            return value


def _record_source(source: str, t0: float, attempts: int, exc: Optional[BaseException] = None) -> None:
    trace = get_trace()
    if not trace:
        return
    trace.record_source(
        source,
        int((time.monotonic() - t0) * 1000),
        attempts=attempts,
        error_class=type(exc).__name__ if exc else "",
        error_message=str(exc)[:200] if exc else "",
    )
