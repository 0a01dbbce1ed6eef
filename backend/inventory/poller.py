"""
Lifecycle Poller — keeps the observed analysis run fresh while it can change.

Phases mirror `AnalysisStatus` plus two client-only phases:

    idle          nothing fetched yet for the observed target
    unavailable   not found, service unavailable, or a failure we will not
                  retry on our own; only `refresh()` leaves this phase

Transitions after each fetch:

    pending / processing        -> poll again after `poll_interval`
    needs_review (unreviewed)   -> poll again (another operator may review it)
    needs_review (reviewed)     -> stop
    done / error                -> stop
    not found / 503 / fail-loud -> unavailable, stop
    transient failure           -> keep the last view, back off, give up after
                                   `max_transient_failures` consecutive misses

Every fetch captures the generation it was issued for. Switching the observed
target bumps the generation and cancels the pending timer, so a response for
an abandoned target is dropped instead of landing in the new view. At most
one fetch per generation is in flight; a tick that finds one running is
skipped, not queued.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import structlog

from core.config import get_settings
from core.errors import ErrorKind, InventoryApiError
from inventory.delta import normalize_delta
from inventory.fetcher import AnalysisFetcher, FetchFailed, FetchResult, ObservedTarget, RunFound, RunNotFound
from inventory.scheduling import Scheduler
from inventory.schemas import AnalysisStatus, DeltaEntry, InventoryAnalysisRun, SubmitReviewRequest
from inventory.selection import ActiveContainerStore

logger = structlog.get_logger()


class PollPhase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    NEEDS_REVIEW = "needs_review"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


_PHASE_BY_STATUS = {
    AnalysisStatus.PENDING: PollPhase.PENDING,
    AnalysisStatus.PROCESSING: PollPhase.PROCESSING,
    AnalysisStatus.DONE: PollPhase.DONE,
    AnalysisStatus.NEEDS_REVIEW: PollPhase.NEEDS_REVIEW,
    AnalysisStatus.ERROR: PollPhase.ERROR,
}

_FAIL_LOUD_KINDS = {ErrorKind.SCHEMA_MISMATCH, ErrorKind.UNEXPECTED}


@dataclass(frozen=True)
class AnalysisView:
    """Everything the dashboard needs to render the observed run."""

    target: ObservedTarget | None = None
    phase: PollPhase = PollPhase.IDLE
    run: InventoryAnalysisRun | None = None
    entries: tuple[DeltaEntry, ...] = ()
    error: InventoryApiError | None = None
    not_found: bool = False
    pending_review: SubmitReviewRequest | None = None
    consecutive_failures: int = 0

    @property
    def has_delta(self) -> bool:
        return self.run is not None and self.run.delta is not None

    @property
    def needs_manual_refresh(self) -> bool:
        return self.phase == PollPhase.UNAVAILABLE and not self.not_found


class LifecyclePoller:
    def __init__(
        self,
        fetcher: AnalysisFetcher,
        scheduler: Scheduler,
        *,
        poll_interval: float | None = None,
        backoff_max: float | None = None,
        max_transient_failures: int | None = None,
        on_change: Callable[[AnalysisView], None] | None = None,
    ):
        settings = get_settings()
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.backoff_max = settings.poll_backoff_max_seconds if backoff_max is None else backoff_max
        self.max_transient_failures = (
            settings.poll_max_transient_failures if max_transient_failures is None else max_transient_failures
        )
        self.on_change = on_change
        self._view = AnalysisView()
        self._handle: Any = None
        self._generation = 0
        self._in_flight: int | None = None
        self._reviewed_run_id: str | None = None

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def view(self) -> AnalysisView:
        return self._view

    @property
    def is_polling(self) -> bool:
        return self._handle is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight == self._generation

    def _set_view(self, view: AnalysisView) -> None:
        self._view = view
        if self.on_change is not None:
            self.on_change(view)

    # ── Target selection ──────────────────────────────────────────────────

    def observe(self, target: ObservedTarget | None) -> None:
        """Switch the observed target; any schedule for the previous one is dropped."""
        if target == self._view.target:
            return
        self._cancel_timer()
        self._generation += 1
        self._reviewed_run_id = None
        self._set_view(AnalysisView(target=target))
        if target is not None:
            logger.info("inventory.observe", target_kind=target.kind, target_id=target.id)
            self._schedule(0.0)

    def bind(self, store: ActiveContainerStore) -> Callable[[], None]:
        """Follow the store's active container. Returns the unsubscribe callable."""

        def on_selection(container_id: str | None) -> None:
            self.observe(ObservedTarget.container(container_id) if container_id else None)

        unsubscribe = store.subscribe(on_selection)
        on_selection(store.active_container_id)
        return unsubscribe

    # ── Operator actions ──────────────────────────────────────────────────

    async def refresh(self) -> AnalysisView:
        """Fetch now. The only way out of `unavailable`."""
        if self._view.target is None:
            return self._view
        self._cancel_timer()
        if self._view.phase == PollPhase.UNAVAILABLE:
            self._set_view(replace(self._view, consecutive_failures=0))
        await self._tick()
        return self._view

    def stop(self) -> None:
        self._cancel_timer()
        logger.info("inventory.poll_stopped", reason="stopped")

    # ── Review hooks ──────────────────────────────────────────────────────

    def begin_review(self, run_id: str, request: SubmitReviewRequest) -> None:
        """Show a submitted review as provisional until the server confirms it."""
        if self._holds(run_id):
            self._set_view(replace(self._view, pending_review=request))

    def discard_review(self, run_id: str) -> None:
        if self._holds(run_id) and self._view.pending_review is not None:
            self._set_view(replace(self._view, pending_review=None))

    def apply_review(self, run: InventoryAnalysisRun) -> bool:
        """Install the server-confirmed reviewed run and stop polling it."""
        if not self._holds(run.run_id):
            return False
        self._cancel_timer()
        # Drop any in-flight poll: it may predate the review.
        self._generation += 1
        self._reviewed_run_id = run.run_id
        self._set_view(
            replace(
                self._view,
                phase=_PHASE_BY_STATUS[run.status],
                run=run,
                entries=normalize_delta(run.delta),
                error=None,
                pending_review=None,
                consecutive_failures=0,
            )
        )
        logger.info("inventory.poll_stopped", reason="reviewed", run_id=run.run_id)
        return True

    def apply_run(self, run: InventoryAnalysisRun) -> bool:
        """Install a run fetched outside the poll loop (e.g. after a review conflict)."""
        if not self._holds(run.run_id):
            return False
        self._cancel_timer()
        # Drop any in-flight poll: it may predate this run.
        self._generation += 1
        self._apply(RunFound(run))
        return True

    def _holds(self, run_id: str) -> bool:
        return self._view.run is not None and self._view.run.run_id == run_id

    # ── Poll loop ─────────────────────────────────────────────────────────

    def _schedule(self, delay: float) -> None:
        generation = self._generation

        async def tick() -> None:
            if generation != self._generation:
                return
            self._handle = None
            await self._tick()

        self._handle = self.scheduler.call_later(delay, tick)
        logger.debug("inventory.poll_scheduled", delay=delay, generation=generation)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self.scheduler.cancel(self._handle)
            self._handle = None

    async def _tick(self) -> None:
        target = self._view.target
        generation = self._generation
        if target is None:
            return
        if self._in_flight == generation:
            logger.debug("inventory.poll_skipped_in_flight", target_id=target.id)
            return

        self._in_flight = generation
        try:
            result = await self.fetcher.fetch(target)
        finally:
            if self._in_flight == generation:
                self._in_flight = None

        if generation != self._generation:
            logger.info("inventory.poll_stale_response_discarded", target_kind=target.kind, target_id=target.id)
            return
        self._apply(result)

    def _apply(self, result: FetchResult) -> None:
        view = self._view

        if isinstance(result, RunFound):
            run = result.run
            self._set_view(
                replace(
                    view,
                    phase=_PHASE_BY_STATUS[run.status],
                    run=run,
                    entries=normalize_delta(run.delta),
                    error=None,
                    not_found=False,
                    consecutive_failures=0,
                )
            )
            delay = self._next_delay(run)
            if delay is None:
                logger.info("inventory.poll_stopped", reason=run.status.value, run_id=run.run_id)
            else:
                self._schedule(delay)
            return

        if isinstance(result, RunNotFound):
            self._set_view(
                replace(
                    view,
                    phase=PollPhase.UNAVAILABLE,
                    run=None,
                    entries=(),
                    error=None,
                    not_found=True,
                    consecutive_failures=0,
                )
            )
            logger.info("inventory.poll_stopped", reason="not_found", target_id=result.target.id)
            return

        self._apply_failure(result)

    def _apply_failure(self, result: FetchFailed) -> None:
        view = self._view
        error = result.error

        if error.kind == ErrorKind.TRANSIENT:
            failures = view.consecutive_failures + 1
            if failures <= self.max_transient_failures:
                self._set_view(replace(view, error=error, consecutive_failures=failures))
                self._schedule(self._backoff_delay(failures, error))
                return
            self._set_view(replace(view, phase=PollPhase.UNAVAILABLE, error=error, consecutive_failures=failures))
            logger.warning("inventory.poll_stopped", reason="transient_failures_exhausted", failures=failures)
            return

        if error.kind in _FAIL_LOUD_KINDS:
            logger.error("inventory.poll_failed", code=error.code, message=error.message, details=error.details)
        self._set_view(
            replace(view, phase=PollPhase.UNAVAILABLE, error=error, not_found=False, consecutive_failures=0)
        )
        logger.info("inventory.poll_stopped", reason=error.kind.value, code=error.code)

    def _next_delay(self, run: InventoryAnalysisRun) -> float | None:
        if run.status in (AnalysisStatus.PENDING, AnalysisStatus.PROCESSING):
            return self.poll_interval
        if run.status == AnalysisStatus.NEEDS_REVIEW:
            if run.review is None and self._reviewed_run_id != run.run_id:
                return self.poll_interval
        return None

    def _backoff_delay(self, failures: int, error: InventoryApiError) -> float:
        delay = min(self.poll_interval * (2**failures), self.backoff_max)
        if error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        return delay
