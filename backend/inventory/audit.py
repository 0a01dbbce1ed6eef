"""
Audit Projector — human-readable views derived from an analysis run.

All functions here are pure: they read a run (or its review) and return
plain data for display.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from inventory.schemas import AnalysisStatus, InventoryAnalysisRun, Review, ReviewAction, ReviewCorrection

NO_CORRECTIONS_NOTE = "Approved as-is, no corrections made"

CorrectionKind = Literal["added", "removed", "adjusted"]
StepStatus = Literal["completed", "active", "error", "upcoming"]

TIMELINE_LABELS = ("Created", "Capture", "Analysis", "Delta Ready", "Finalized")


@dataclass(frozen=True)
class AuditCorrection:
    name: str
    sku: str | None
    original_count: int
    corrected_count: int
    kind: CorrectionKind

    @property
    def difference(self) -> int:
        return self.corrected_count - self.original_count

    def describe(self) -> str:
        if self.kind == "added":
            return f"+ Added {self.name}: {self.corrected_count}"
        if self.kind == "removed":
            return f"- Removed {self.name} (was {self.original_count})"
        return f"{self.name}: {self.original_count} -> {self.corrected_count} ({self.difference:+d})"


@dataclass(frozen=True)
class AuditTrail:
    reviewer_id: str
    action: ReviewAction
    reviewed_at: datetime
    corrections: tuple[AuditCorrection, ...]
    notes: str | None

    @property
    def action_label(self) -> str:
        return "Corrected" if self.action == ReviewAction.OVERRIDE else "Approved"

    @property
    def no_corrections(self) -> bool:
        return not self.corrections

    @property
    def annotation(self) -> str | None:
        """Explicit marker so an approval never reads as missing audit data."""
        return NO_CORRECTIONS_NOTE if self.no_corrections else None

    def render_lines(self) -> list[str]:
        lines = [
            f"Reviewer: {self.reviewer_id}",
            f"Reviewed: {self.reviewed_at.isoformat()}",
            f"Action: {self.action_label}",
        ]
        if self.no_corrections:
            lines.append(NO_CORRECTIONS_NOTE)
        else:
            lines.extend(correction.describe() for correction in self.corrections)
        if self.notes:
            lines.append(f"Notes: {self.notes}")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "action": self.action.value,
            "action_label": self.action_label,
            "reviewed_at": self.reviewed_at.isoformat(),
            "corrections": [
                {
                    "name": c.name,
                    "sku": c.sku,
                    "original_count": c.original_count,
                    "corrected_count": c.corrected_count,
                    "kind": c.kind,
                }
                for c in self.corrections
            ],
            "annotation": self.annotation,
            "notes": self.notes,
        }


def _correction_kind(correction: ReviewCorrection) -> CorrectionKind:
    if correction.added:
        return "added"
    if correction.removed:
        return "removed"
    return "adjusted"


def project_audit_trail(review: Review | None) -> AuditTrail | None:
    """Audit view of a review; None when the run has not been reviewed."""
    if review is None:
        return None
    corrections: tuple[AuditCorrection, ...] = ()
    if review.action == ReviewAction.OVERRIDE:
        corrections = tuple(
            AuditCorrection(
                name=c.name,
                sku=c.sku,
                original_count=c.original_count,
                corrected_count=c.corrected_count,
                kind=_correction_kind(c),
            )
            for c in review.corrections
        )
    return AuditTrail(
        reviewer_id=review.reviewer_id,
        action=review.action,
        reviewed_at=review.reviewed_at,
        corrections=corrections,
        notes=review.notes or None,
    )


# ── Timeline ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimelineStep:
    label: str
    status: StepStatus


def _steps(*statuses: StepStatus) -> list[TimelineStep]:
    return [TimelineStep(label, status) for label, status in zip(TIMELINE_LABELS, statuses)]


def derive_timeline_steps(run: InventoryAnalysisRun) -> list[TimelineStep]:
    if run.status == AnalysisStatus.PENDING:
        return _steps("completed", "active", "upcoming", "upcoming", "upcoming")
    if run.status == AnalysisStatus.PROCESSING:
        return _steps("completed", "completed", "active", "upcoming", "upcoming")
    if run.status == AnalysisStatus.ERROR:
        return _steps("completed", "completed", "error", "upcoming", "upcoming")
    if run.is_reviewed:
        return _steps("completed", "completed", "completed", "completed", "completed")
    return _steps("completed", "completed", "completed", "active", "upcoming")


# ── Debug info ────────────────────────────────────────────────────────────


def run_debug_fields(run: InventoryAnalysisRun, request_id: str | None = None) -> list[tuple[str, str]]:
    """Label/value pairs for the debug panel; absent values are skipped."""
    meta = run.metadata
    candidates: list[tuple[str, Any]] = [
        ("Run ID", run.run_id),
        ("Session ID", run.session_id),
        ("Container ID", run.container_id),
        ("Provider", meta.provider),
        ("Processing Time", f"{meta.processing_time_ms:g} ms" if meta.processing_time_ms is not None else None),
        ("Model Version", meta.model_version),
        ("Created", meta.created_at.isoformat()),
        ("Completed", meta.completed_at.isoformat() if meta.completed_at else None),
        ("Error", meta.error_message),
        ("Request ID", request_id),
    ]
    return [(label, str(value)) for label, value in candidates if value is not None]
