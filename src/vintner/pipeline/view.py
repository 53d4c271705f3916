"""
Read-only projections of the item collection.

Nothing here mutates its input; both functions are safe to call on every
poll or render.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import BatchItem, FilterCriteria, ItemStatus


def _haystack(item: BatchItem) -> str:
    ocr_text = item.result.ocr_text if item.result else ""
    final = item.result.final_output if item.result else ""
    return f"{item.original_filename} {ocr_text} {final}".lower()


def matches(item: BatchItem, criteria: FilterCriteria) -> bool:
    if criteria.status is not None and item.status != criteria.status:
        return False
    if criteria.needs_review is not None:
        flagged = bool(item.result and item.result.needs_review)
        if flagged != criteria.needs_review:
            return False
    if criteria.search and criteria.search.lower() not in _haystack(item):
        return False
    return True


def project(items: Iterable[BatchItem], criteria: FilterCriteria | None = None) -> list[BatchItem]:
    """
    Filter items for display, preserving collection order.

    Parameters:
        items: Current item collection
        criteria: Status equality, needs-review equality and case-insensitive
            search over filename, OCR text and final output; unset fields
            do not filter

    Returns:
        New list of the matching items

    Example:
        >>> visible = project(batch.items, FilterCriteria(status=ItemStatus.FAILED))
    """
    criteria = criteria or FilterCriteria()
    return [item for item in items if matches(item, criteria)]


@dataclass(frozen=True)
class BatchSummary:
    total: int
    processing: int
    completed: int
    failed: int
    approved: int
    needs_review: int

    @property
    def percent_complete(self) -> int:
        if not self.total:
            return 0
        return round(self.completed / self.total * 100)


def summarize(items: Sequence[BatchItem]) -> BatchSummary:
    """Counts for the progress bar and the end-of-run report."""
    completed = sum(1 for i in items if i.status is ItemStatus.UPLOADED_TO_PUBLISH)
    failed = sum(1 for i in items if i.status is ItemStatus.FAILED)
    return BatchSummary(
        total=len(items),
        processing=len(items) - completed - failed,
        completed=completed,
        failed=failed,
        approved=sum(1 for i in items if i.result and i.result.approved),
        needs_review=sum(1 for i in items if i.result and i.result.needs_review),
    )
