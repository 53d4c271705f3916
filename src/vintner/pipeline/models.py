"""
Pipeline state types.

Items and results are frozen dataclasses: every update builds a new value with
``dataclasses.replace`` and the batch swaps its whole ``items`` tuple, so a
reader never observes a half-applied stage response.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .naming import normalize


NHR = "NHR"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    UPLOADED = "uploaded"
    OCR_DONE = "ocr_done"
    FORMATTED = "formatted"
    UPLOADED_TO_PUBLISH = "uploaded_to_publish"
    FAILED = "failed"


class CorrectionStatus(str, Enum):
    NEEDS_REVIEW = "NHR"
    SEARCH_FAILED = "search_failed"
    OCR_FAILED = "ocr_failed"
    MANUAL_REJECTION = "manual_rejection"
    OTHER = "other"
    APPROVED = "approved"


class Destination(str, Enum):
    """Storage folder a selection is published into."""

    INPUT = "input"
    OUTPUT = "output"
    NEEDS_REVIEW = "nhr"


# Reasons the storage backend accepts for needs-review selections.
REJECTION_REASONS = ("search_failed", "ocr_failed", "manual_rejection", "others")


@dataclass(frozen=True)
class Match:
    option: str
    score: float
    reason: str = ""


@dataclass(frozen=True)
class ProcessingResult:
    """
    Correction and match state for one item.

    Attributes:
        ocr_text: Text extracted by the OCR stage
        top_matches: Best candidates, descending by score, at most three
        selected_option: Operator- or auto-selected candidate (``"NHR"`` when
            nothing was confidently selected)
        final_output: Name the label is published under
        correction_status: Why the item does or does not need review
        needs_review: Review flag reported by the compare stage
        match_confidence: Score of the top match, ``None`` when absent
        validated_gid: Catalog id the compare stage validated, if any
        approved: Operator approval flag
        timestamps: Stage name -> ISO-8601 completion time
    """

    ocr_text: str = ""
    top_matches: tuple[Match, ...] = ()
    selected_option: str = ""
    final_output: str = ""
    correction_status: CorrectionStatus = CorrectionStatus.NEEDS_REVIEW
    needs_review: bool = False
    match_confidence: float | None = None
    validated_gid: str | None = None
    approved: bool = False
    timestamps: Mapping[str, str] = field(default_factory=dict)

    def stamped(self, stage: str, when: datetime | None = None) -> "ProcessingResult":
        stamp = (when or utc_now()).isoformat()
        return replace(self, timestamps={**self.timestamps, stage: stamp})


@dataclass(frozen=True)
class BatchItem:
    """
    One submitted label image tracked through the pipeline.

    ``normalized_filename`` is fixed at creation and is what every stage
    correlates against; ``server_filename`` only records the remote rename.
    """

    id: str
    original_filename: str
    normalized_filename: str
    status: ItemStatus = ItemStatus.UPLOADED
    server_filename: str | None = None
    result: ProcessingResult | None = None
    source_blob: bytes | None = field(default=None, repr=False)
    publish_ids: Mapping[str, str] = field(default_factory=dict)
    publish_links: Mapping[str, str] = field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, item_id: str, filename: str, *, source_blob: bytes | None = None) -> "BatchItem":
        return cls(
            id=item_id,
            original_filename=filename,
            normalized_filename=normalize(filename),
            source_blob=source_blob,
        )

    def evolve(self, **changes: Any) -> "BatchItem":
        """Return a copy with ``changes`` applied and ``updated_at`` refreshed."""
        changes.setdefault("updated_at", utc_now())
        return replace(self, **changes)

    @property
    def filename(self) -> str:
        return self.original_filename


@dataclass(frozen=True)
class FilterCriteria:
    status: ItemStatus | None = None
    needs_review: bool | None = None
    search: str | None = None


@dataclass(frozen=True)
class PublishSelection:
    """
    One operator-approved item to publish.

    Attributes:
        item_id: Local item the selection was derived from
        image: Filename the backend knows the upload by
        chosen_name: Output file name in storage and title in the catalog
        destination: ``output`` for approved matches, ``nhr`` for manual review
        rejection_reason: Required when destination is ``nhr``
        catalog_gid: Catalog item the label belongs to, if validated
    """

    item_id: str
    image: str
    chosen_name: str
    destination: Destination = Destination.OUTPUT
    rejection_reason: str | None = None
    catalog_gid: str | None = None

    def storage_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "image": self.image,
            "selected_name": self.chosen_name,
            "target": self.destination.value,
        }
        if self.rejection_reason:
            payload["nhr_reason"] = self.rejection_reason
        if self.catalog_gid:
            payload["gid"] = self.catalog_gid
        return payload

    def catalog_payload(self) -> dict[str, Any]:
        return {"image": self.image, "selected_name": self.chosen_name, "gid": self.catalog_gid}


@dataclass(frozen=True)
class Progress:
    done: int = 0
    total: int = 0


@dataclass
class Batch:
    """
    Authoritative state of one wizard run.

    ``items`` is only ever replaced, never mutated in place.
    """

    items: tuple[BatchItem, ...] = ()
    ocr_stage_locked: bool = False
    compare_stage_locked: bool = False
    cancelled: bool = False
    ocr_running: bool = False
    compare_running: bool = False
    publishing: bool = False
    filter: FilterCriteria = field(default_factory=FilterCriteria)
    error: str | None = None
    message: str | None = None
    timings: dict[str, float] = field(default_factory=dict)
    progress: Progress = field(default_factory=Progress)

    @property
    def busy(self) -> bool:
        return self.ocr_running or self.compare_running or self.publishing

    def get(self, item_id: str) -> BatchItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def replace_items(self, updates: Mapping[str, BatchItem]) -> None:
        """Swap in updated items by id, keeping collection order."""
        if updates:
            self.items = tuple(updates.get(item.id, item) for item in self.items)
