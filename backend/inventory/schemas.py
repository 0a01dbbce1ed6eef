"""
Inventory Analysis Contracts

Pydantic models for every payload exchanged with the orchestrator's
inventory endpoints. Field names are snake_case, matching the wire format.
Responses that do not fit these models are rejected at the boundary rather
than coerced.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_NOTES_LENGTH = 500


# ─── Enums ──────────────────────────────────────────────────────────────────


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    NEEDS_REVIEW = "needs_review"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({AnalysisStatus.DONE, AnalysisStatus.ERROR})
DELTA_STATUSES = frozenset({AnalysisStatus.DONE, AnalysisStatus.NEEDS_REVIEW})


class ItemCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    OVERRIDE = "override"


# ─── Value objects ──────────────────────────────────────────────────────────


class BoundingBox(BaseModel):
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class InventoryItem(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    quantity: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    bounding_box: BoundingBox | None = None
    condition: ItemCondition | None = None


class DeltaEntry(BaseModel):
    """Canonical item-level change. The only delta shape consumers see."""

    name: str = Field(min_length=1)
    sku: str | None = None
    before_count: int = Field(ge=0)
    after_count: int = Field(ge=0)
    change: int
    confidence: float = Field(ge=0, le=1)
    rationale: str | None = None

    model_config = {"frozen": True}


# Categorized (v2.0) delta buckets


class CountedDeltaItem(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    qty: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)


class ChangedQtyItem(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    from_qty: int = Field(ge=0)
    to_qty: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)


class UnknownDeltaItem(BaseModel):
    note: str
    confidence: float = Field(default=0.0, ge=0, le=1)


CATEGORIZED_BUCKETS = ("added", "removed", "changed_qty", "unknown")


class CategorizedDelta(BaseModel):
    added: list[CountedDeltaItem] = Field(default_factory=list)
    removed: list[CountedDeltaItem] = Field(default_factory=list)
    changed_qty: list[ChangedQtyItem] = Field(default_factory=list)
    unknown: list[UnknownDeltaItem] = Field(default_factory=list)


def check_delta_shape(value: Any) -> Any:
    """Reject delta objects that carry none of the categorized buckets."""
    if isinstance(value, dict) and not any(bucket in value for bucket in CATEGORIZED_BUCKETS):
        raise ValueError(f"delta object must contain one of {', '.join(CATEGORIZED_BUCKETS)}")
    return value


class OverlayItem(BaseModel):
    label: str
    bounding_box: BoundingBox
    confidence: float | None = Field(default=None, ge=0, le=1)


class OverlayData(BaseModel):
    before: list[OverlayItem] | None = None
    after: list[OverlayItem] | None = None


class EvidenceImages(BaseModel):
    """Time-limited image links; passed through for display only."""

    before_image_url: str | None = None
    after_image_url: str | None = None
    overlays: OverlayData | None = None


# ─── Review ─────────────────────────────────────────────────────────────────


class ReviewCorrection(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    original_count: int = Field(ge=0)
    corrected_count: int = Field(ge=0)
    added: bool | None = None
    removed: bool | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Item name is required")
        return value

    @model_validator(mode="after")
    def added_removed_exclusive(self) -> "ReviewCorrection":
        if self.added and self.removed:
            raise ValueError(f"Correction for {self.name!r} cannot be both added and removed")
        return self


class Review(BaseModel):
    reviewer_id: str
    action: ReviewAction
    corrections: list[ReviewCorrection] = Field(default_factory=list)
    notes: str | None = None
    reviewed_at: datetime


class SubmitReviewRequest(BaseModel):
    action: ReviewAction
    corrections: list[ReviewCorrection] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)

    @model_validator(mode="after")
    def corrections_match_action(self) -> "SubmitReviewRequest":
        if self.action == ReviewAction.APPROVE and self.corrections:
            raise ValueError("An approve review cannot carry corrections")
        if self.action == ReviewAction.OVERRIDE and not self.corrections:
            raise ValueError("At least one correction is required")
        return self

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ReviewResponseData(BaseModel):
    run_id: str = Field(min_length=1)
    status: AnalysisStatus
    review: Review


# ─── Analysis run ───────────────────────────────────────────────────────────


class AnalysisMetadata(BaseModel):
    provider: str
    processing_time_ms: float | None = None
    model_version: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class InventoryAnalysisRun(BaseModel):
    run_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    container_id: str = Field(min_length=1)
    status: AnalysisStatus
    items_before: list[InventoryItem] | None = None
    items_after: list[InventoryItem] | None = None
    delta: list[DeltaEntry] | CategorizedDelta | None = None
    evidence: EvidenceImages | None = None
    review: Review | None = None
    metadata: AnalysisMetadata

    @field_validator("delta", mode="before")
    @classmethod
    def delta_is_known_variant(cls, value: Any) -> Any:
        return check_delta_shape(value)

    @model_validator(mode="after")
    def delta_only_when_analysed(self) -> "InventoryAnalysisRun":
        if self.delta is not None and self.status not in DELTA_STATUSES:
            raise ValueError(f"delta must be absent while status is {self.status.value}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_reviewed(self) -> bool:
        return self.review is not None


# ─── Run list ───────────────────────────────────────────────────────────────


class DeltaSummary(BaseModel):
    total_items: int = Field(ge=0)
    items_changed: int = Field(ge=0)
    items_added: int = Field(ge=0)
    items_removed: int = Field(ge=0)


class RunListItem(BaseModel):
    run_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    container_id: str = Field(min_length=1)
    status: AnalysisStatus
    delta_summary: DeltaSummary | None = None
    metadata: AnalysisMetadata


class InventoryPagination(BaseModel):
    total: int = Field(ge=0)
    limit: int = Field(gt=0)
    offset: int = Field(ge=0)
    has_more: bool


class RunListData(BaseModel):
    runs: list[RunListItem]
    pagination: InventoryPagination


# ─── Envelope ───────────────────────────────────────────────────────────────


class ApiErrorBody(BaseModel):
    code: str
    message: str = ""
    retryable: bool = False
    retry_after_seconds: float | None = None


class ApiEnvelope(BaseModel):
    success: bool
    data: Any = None
    error: ApiErrorBody | None = None
    timestamp: str | None = None
    request_id: str | None = None
