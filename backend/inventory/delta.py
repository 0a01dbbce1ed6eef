"""
Delta normalization.

The analysis service reports item changes in one of two shapes:

    flat (v1.0)         [{"name", "before_count", "after_count", "change", ...}, ...]
    categorized (v2.0)  {"added": [...], "removed": [...], "changed_qty": [...], "unknown": [...]}

`normalize_delta` folds both into one ordered tuple of `DeltaEntry`. Nothing
downstream of this module looks at the raw `delta` field.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import TypeAdapter

from inventory.schemas import CategorizedDelta, DeltaEntry, check_delta_shape

UNKNOWN_ITEM_NAME = "Unidentified item"

_FLAT_ADAPTER = TypeAdapter(list[DeltaEntry])

RawDelta = Sequence[DeltaEntry] | Sequence[Mapping[str, Any]] | CategorizedDelta | Mapping[str, Any] | None


def is_categorized_delta(delta: RawDelta) -> bool:
    if delta is None:
        return False
    if isinstance(delta, CategorizedDelta):
        return True
    return isinstance(delta, Mapping)


def categorized_to_flat(delta: CategorizedDelta) -> tuple[DeltaEntry, ...]:
    """
    Flatten a categorized delta in bucket order removed, changed_qty, added, unknown.

    removed[i]     -> before=qty,      after=0,      change=-qty
    changed_qty[i] -> before=from_qty, after=to_qty, change=to_qty-from_qty
    added[i]       -> before=0,        after=qty,    change=+qty
    unknown[i]     -> advisory row, before=after=change=0, confidence 0, note as rationale
    """
    entries: list[DeltaEntry] = []

    for item in delta.removed:
        entries.append(
            DeltaEntry(
                name=item.name,
                sku=item.sku,
                before_count=item.qty,
                after_count=0,
                change=-item.qty,
                confidence=item.confidence,
            )
        )

    for item in delta.changed_qty:
        entries.append(
            DeltaEntry(
                name=item.name,
                sku=item.sku,
                before_count=item.from_qty,
                after_count=item.to_qty,
                change=item.to_qty - item.from_qty,
                confidence=item.confidence,
            )
        )

    for item in delta.added:
        entries.append(
            DeltaEntry(
                name=item.name,
                sku=item.sku,
                before_count=0,
                after_count=item.qty,
                change=item.qty,
                confidence=item.confidence,
            )
        )

    for item in delta.unknown:
        entries.append(
            DeltaEntry(
                name=UNKNOWN_ITEM_NAME,
                before_count=0,
                after_count=0,
                change=0,
                confidence=0.0,
                rationale=item.note,
            )
        )

    return tuple(entries)


def normalize_delta(delta: RawDelta) -> tuple[DeltaEntry, ...]:
    """
    Canonicalize either delta variant.

    Accepts validated models or raw wire values. `None` yields an empty tuple;
    callers tell "no delta yet" from "no changes" by run status, not emptiness.
    Raw values that fit neither variant raise `pydantic.ValidationError`.
    """
    if delta is None:
        return ()
    if isinstance(delta, CategorizedDelta):
        return categorized_to_flat(delta)
    if isinstance(delta, Mapping):
        return categorized_to_flat(CategorizedDelta.model_validate(check_delta_shape(dict(delta))))
    if all(isinstance(entry, DeltaEntry) for entry in delta):
        return tuple(delta)
    return tuple(_FLAT_ADAPTER.validate_python(list(delta)))


def is_advisory(entry: DeltaEntry) -> bool:
    """True for rows synthesized from `unknown` notes rather than counted items."""
    return entry.name == UNKNOWN_ITEM_NAME and entry.before_count == 0 and entry.after_count == 0


def net_change(entries: Sequence[DeltaEntry]) -> int:
    return sum(entry.change for entry in entries)
