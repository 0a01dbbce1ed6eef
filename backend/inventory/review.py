"""
Review Submitter — approve-as-is or override with corrected counts.

Each run takes exactly one review. The server enforces that with a 409
`REVIEW_CONFLICT`; this module turns the possible answers into three
outcomes instead of exceptions:

    ReviewApplied     server accepted; the run now carries the review
    ReviewConflicted  someone else reviewed first; the current run is refetched
                      and nothing local is overwritten
    ReviewFailed      rejected client-side, by the server, or by the transport;
                      the operator's edits are untouched and may be resubmitted
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

import structlog
from pydantic import ValidationError

from core.errors import ErrorKind, InventoryApiError
from integrations.orchestrator import OrchestratorClient
from inventory.delta import is_advisory, normalize_delta
from inventory.fetcher import AnalysisFetcher, RunFound
from inventory.poller import LifecyclePoller
from inventory.schemas import (
    AnalysisStatus,
    InventoryAnalysisRun,
    ReviewAction,
    ReviewCorrection,
    SubmitReviewRequest,
)

logger = structlog.get_logger()

REVIEWABLE_STATUSES = frozenset({AnalysisStatus.DONE, AnalysisStatus.NEEDS_REVIEW})


# ── Outcomes ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReviewApplied:
    run: InventoryAnalysisRun


@dataclass(frozen=True)
class ReviewConflicted:
    error: InventoryApiError
    current_run: InventoryAnalysisRun | None = None


@dataclass(frozen=True)
class ReviewFailed:
    error: InventoryApiError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    @property
    def retry_after_seconds(self) -> float | None:
        return self.error.retry_after_seconds

    @property
    def messages(self) -> list[str]:
        return self.error.details or [self.error.message]


ReviewOutcome = Union[ReviewApplied, ReviewConflicted, ReviewFailed]


# ── Correction editing ────────────────────────────────────────────────────


@dataclass
class EditableItem:
    name: str
    sku: str | None
    original_count: int
    corrected_count: int
    added: bool = False
    removed: bool = False


def editable_items_from_run(run: InventoryAnalysisRun) -> list[EditableItem]:
    """Seed the correction editor from the run's canonical delta (after-counts)."""
    return [
        EditableItem(
            name=entry.name,
            sku=entry.sku,
            original_count=entry.after_count,
            corrected_count=entry.after_count,
        )
        for entry in normalize_delta(run.delta)
        if not is_advisory(entry)
    ]


def build_corrections(items: Iterable[EditableItem]) -> list[dict[str, Any]]:
    """
    Keep only real corrections: additions, removals and changed counts.

    An item added and then removed cancels out. Removed items are corrected
    to zero. Returned as wire dicts so validation happens in one place.
    """
    corrections: list[dict[str, Any]] = []
    for item in items:
        if item.added and item.removed:
            continue
        if not (item.added or item.removed) and item.corrected_count == item.original_count:
            continue
        correction: dict[str, Any] = {
            "name": item.name,
            "sku": item.sku,
            "original_count": item.original_count,
            "corrected_count": 0 if item.removed else item.corrected_count,
        }
        if item.added:
            correction["added"] = True
        if item.removed:
            correction["removed"] = True
        corrections.append(correction)
    return corrections


def validate_review(
    action: ReviewAction | str,
    corrections: Iterable[ReviewCorrection | Mapping[str, Any]] = (),
    notes: str | None = None,
) -> SubmitReviewRequest:
    """Build the request, raising `InventoryApiError(VALIDATION_FAILED)` when it is not submittable."""
    payload = {
        "action": action,
        "corrections": [
            correction.model_dump() if isinstance(correction, ReviewCorrection) else dict(correction)
            for correction in corrections
        ],
        "notes": notes or None,
    }
    try:
        return SubmitReviewRequest.model_validate(payload)
    except ValidationError as exc:
        details = [_format_error(err) for err in exc.errors()]
        raise InventoryApiError("VALIDATION_FAILED", "; ".join(details), details=details) from exc


def _format_error(err: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


# ── Submitter ─────────────────────────────────────────────────────────────


class ReviewSubmitter:
    def __init__(
        self,
        client: OrchestratorClient,
        *,
        fetcher: AnalysisFetcher | None = None,
        poller: LifecyclePoller | None = None,
    ):
        self.client = client
        self.fetcher = fetcher or AnalysisFetcher(client)
        self.poller = poller

    async def submit(
        self,
        run: InventoryAnalysisRun,
        action: ReviewAction | str,
        corrections: Iterable[ReviewCorrection | Mapping[str, Any]] = (),
        notes: str | None = None,
    ) -> ReviewOutcome:
        log = logger.bind(run_id=run.run_id, action=str(getattr(action, "value", action)))

        if run.review is not None:
            log.info("inventory.review_conflict", source="local")
            return ReviewConflicted(
                InventoryApiError("REVIEW_CONFLICT", "This analysis has already been reviewed."),
                current_run=run,
            )
        if run.status not in REVIEWABLE_STATUSES:
            log.info("inventory.review_rejected_client_side", reason="status", status=run.status.value)
            return ReviewFailed(
                InventoryApiError("VALIDATION_FAILED", f"A run in status {run.status.value} cannot be reviewed")
            )
        try:
            request = validate_review(action, corrections, notes)
        except InventoryApiError as exc:
            log.info("inventory.review_rejected_client_side", errors=exc.details)
            return ReviewFailed(exc)

        if self.poller is not None:
            self.poller.begin_review(run.run_id, request)
        try:
            data = await self.client.submit_review(run.run_id, request)
        except InventoryApiError as exc:
            if self.poller is not None:
                self.poller.discard_review(run.run_id)
            if exc.kind == ErrorKind.CONFLICT:
                log.info("inventory.review_conflict", source="server")
                return ReviewConflicted(exc, current_run=await self._refetch(run))
            log.warning("inventory.review_failed", code=exc.code, retryable=exc.retryable)
            return ReviewFailed(exc)

        reviewed = run.model_copy(update={"status": data.status, "review": data.review})
        if self.poller is not None:
            self.poller.apply_review(reviewed)
        log.info("inventory.review_applied", status=data.status.value, reviewer_id=data.review.reviewer_id)
        return ReviewApplied(reviewed)

    async def approve(self, run: InventoryAnalysisRun, notes: str | None = None) -> ReviewOutcome:
        return await self.submit(run, ReviewAction.APPROVE, (), notes)

    async def override(
        self,
        run: InventoryAnalysisRun,
        corrections: Iterable[ReviewCorrection | Mapping[str, Any]],
        notes: str | None = None,
    ) -> ReviewOutcome:
        return await self.submit(run, ReviewAction.OVERRIDE, corrections, notes)

    async def _refetch(self, run: InventoryAnalysisRun) -> InventoryAnalysisRun | None:
        result = await self.fetcher.fetch_by_session(run.session_id)
        if not isinstance(result, RunFound):
            return None
        if self.poller is not None:
            self.poller.apply_run(result.run)
        return result.run
