"""
Correlation of remote stage results with local items.

The OCR and compare stages answer with arrays keyed by filename, not by item
id. They may rename files, reorder results, or return fewer results than
items. ``correlate`` assigns each result to at most one item:

1. Exact pass: each item, in collection order, takes the first unconsumed
   result that shares one of its normalized keys.
2. Fallback pass: each still-unassigned item takes the first unconsumed
   result in response order.
3. Items left over once results run out are reported as unmatched.

The fallback can mis-pair items whose names collide or whose results are
missing. That is accepted: an unpaired item blocks the operator, a wrongly
paired one can be corrected during review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .naming import normalize


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    """
    Attributes:
        item_index: Position of the item in the submitted collection
        result_index: Position of the result in the response
        exact: False when the pairing came from the order-based fallback
    """

    item_index: int
    result_index: int
    exact: bool


@dataclass
class CorrelationReport:
    """Outcome of one correlation pass."""

    assignments: list[Assignment] = field(default_factory=list)
    unmatched_items: list[int] = field(default_factory=list)
    unused_results: list[int] = field(default_factory=list)
    collisions: dict[str, list[int]] = field(default_factory=dict)

    def result_for(self, item_index: int) -> int | None:
        for a in self.assignments:
            if a.item_index == item_index:
                return a.result_index
        return None

    @property
    def fallback_count(self) -> int:
        return sum(1 for a in self.assignments if not a.exact)


def key_set(names: Iterable[str | None]) -> tuple[str, ...]:
    """Normalize ``names`` into a de-duplicated key tuple, dropping empties."""
    keys: list[str] = []
    for name in names:
        k = normalize(name)
        if k and k not in keys:
            keys.append(k)
    return tuple(keys)


def find_collisions(item_keys: Sequence[Sequence[str]]) -> dict[str, list[int]]:
    """Map each primary key shared by more than one item to those item indexes."""
    seen: dict[str, list[int]] = {}
    for i, keys in enumerate(item_keys):
        if keys:
            seen.setdefault(keys[0], []).append(i)
    return {k: idxs for k, idxs in seen.items() if len(idxs) > 1}


def correlate(
    item_keys: Sequence[Sequence[str]],
    result_keys: Sequence[Sequence[str]],
    *,
    stage: str = "",
) -> CorrelationReport:
    """
    Pair results with items without ever reusing a result.

    Parameters:
        item_keys: Per item, the normalized keys it may be known by
        result_keys: Per result, the normalized filenames it reports
        stage: Stage name used in log events

    Returns:
        CorrelationReport with assignments sorted by item index

    Example:
        >>> report = correlate([("a.jpg",), ("b.jpg",)], [("b.jpg",), ("a.jpg",)])
        >>> [(a.item_index, a.result_index) for a in report.assignments]
        [(0, 1), (1, 0)]
    """
    consumed: set[int] = set()
    assigned: dict[int, Assignment] = {}

    for i, keys in enumerate(item_keys):
        wanted = set(keys)
        if not wanted:
            continue
        for r, rkeys in enumerate(result_keys):
            if r in consumed:
                continue
            if wanted.intersection(rkeys):
                consumed.add(r)
                assigned[i] = Assignment(item_index=i, result_index=r, exact=True)
                break

    unmatched: list[int] = []
    for i in range(len(item_keys)):
        if i in assigned:
            continue
        free = next((r for r in range(len(result_keys)) if r not in consumed), None)
        if free is None:
            unmatched.append(i)
            continue
        consumed.add(free)
        assigned[i] = Assignment(item_index=i, result_index=free, exact=False)

    report = CorrelationReport(
        assignments=[assigned[i] for i in sorted(assigned)],
        unmatched_items=unmatched,
        unused_results=[r for r in range(len(result_keys)) if r not in consumed],
        collisions=find_collisions(item_keys),
    )

    if report.collisions:
        LOGGER.warning(
            "correlation_collision",
            extra={"stage": stage, "keys": sorted(report.collisions)},
        )
    if report.fallback_count or report.unmatched_items:
        LOGGER.info(
            "correlation_fallback",
            extra={
                "stage": stage,
                "fallback": report.fallback_count,
                "unmatched": len(report.unmatched_items),
                "unused_results": len(report.unused_results),
            },
        )
    return report
