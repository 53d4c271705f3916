"""
Chunked publish of approved selections.

Selections are sent in fixed-size chunks, each chunk first to storage and then
to the catalog. A failing chunk stops the run: chunks already completed stay
published and later chunks are never attempted. The guarantee is "at most one
full publish per attempted item", not all-or-nothing across the batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from vintner.errors import PartialBatchFailure, ValidationFailure, VintnerError
from vintner.remote.client import StageClient
from vintner.remote.models import StoragePublishResponse

from .models import (
    REJECTION_REASONS,
    Batch,
    BatchItem,
    Destination,
    ItemStatus,
    Progress,
    PublishSelection,
)
from .naming import normalize


LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10


@dataclass
class DispatchReport:
    """
    Outcome of one dispatch.

    Attributes:
        total: Selections submitted
        done: Selections whose chunk completed
        chunks_completed: Number of chunks that fully succeeded
        catalog_count: Sum of counts reported by the catalog stage
        published_ids: Item ids moved to ``uploaded_to_publish``
        failed_chunk: Index of the chunk that failed, if any
        error: Failure message, if any
        elapsed_seconds: Wall-clock duration
    """

    total: int
    done: int = 0
    chunks_completed: int = 0
    catalog_count: int = 0
    published_ids: list[str] = field(default_factory=list)
    failed_chunk: int | None = None
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None


def chunked(seq: Sequence[PublishSelection], size: int) -> Iterator[list[PublishSelection]]:
    """Yield consecutive slices of ``seq`` of at most ``size`` elements."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(seq), size):
        yield list(seq[start:start + size])


def validate_selections(batch: Batch, selections: Sequence[PublishSelection]) -> None:
    """
    Check every selection before anything is sent.

    Raises:
        ValidationFailure: On the first selection that is not publishable
    """
    if not selections:
        raise ValidationFailure("Nothing selected to publish")
    seen: set[str] = set()
    for sel in selections:
        item = batch.get(sel.item_id)
        if item is None:
            raise ValidationFailure(f"Unknown item: {sel.item_id}")
        if item.status is not ItemStatus.FORMATTED:
            raise ValidationFailure(
                f"Item {item.original_filename} is {item.status.value}, only formatted items can be published"
            )
        if sel.item_id in seen:
            raise ValidationFailure(f"Item {item.original_filename} selected twice")
        seen.add(sel.item_id)
        if sel.destination is Destination.NEEDS_REVIEW and sel.rejection_reason not in REJECTION_REASONS:
            raise ValidationFailure("NHR reason is required for NHR selections")


def storage_refs(
    item: BatchItem, sel: PublishSelection, resp: StoragePublishResponse
) -> tuple[str | None, str | None]:
    """Storage id and link the response reports for one published item."""
    names = {normalize(sel.image), normalize(sel.chosen_name), item.normalized_filename}
    if item.server_filename:
        names.add(normalize(item.server_filename))

    for stored in resp.uploaded_files:
        if normalize(stored.filename) in names:
            return stored.drive_id, stored.web_view_link

    upload_result = resp.upload_result or {}
    shared_id = upload_result.get("drive_file_id")
    shared_link = upload_result.get("webViewLink") or upload_result.get("web_view_link")
    for entry in resp.files_organized or []:
        keys = {normalize(entry.get("ocr_filename")), normalize(entry.get("filename"))}
        if names & keys:
            return (
                entry.get("drive_file_id") or shared_id,
                entry.get("webViewLink") or entry.get("web_view_link") or shared_link,
            )
    return None, None


class PublishDispatcher:
    """
    Drives selections through the storage and catalog publish calls.

    Parameters:
        client: Stage client
        chunk_size: Maximum selections per remote request
    """

    def __init__(self, client: StageClient, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk size must be positive")
        self.client = client
        self.chunk_size = chunk_size

    def _apply_chunk(
        self, batch: Batch, chunk: list[PublishSelection], resp: StoragePublishResponse
    ) -> list[str]:
        updates: dict[str, BatchItem] = {}
        for sel in chunk:
            item = batch.get(sel.item_id)
            if item is None:
                continue
            drive_id, link = storage_refs(item, sel, resp)
            ids = dict(item.publish_ids)
            links = dict(item.publish_links)
            if drive_id:
                ids["target"] = str(drive_id)
            if link:
                links["target"] = str(link)
            updates[item.id] = item.evolve(
                status=ItemStatus.UPLOADED_TO_PUBLISH,
                publish_ids=ids,
                publish_links=links,
                result=item.result.stamped("uploaded_to_publish") if item.result else None,
            )
        batch.replace_items(updates)
        return list(updates)

    async def dispatch(
        self, batch: Batch, selections: Sequence[PublishSelection], *, user_id: str
    ) -> DispatchReport:
        """
        Publish ``selections`` chunk by chunk.

        Validation failures raise before any request is made. Remote failures
        do not raise: the report carries the error and progress stops at the
        last completed chunk.

        Raises:
            ValidationFailure: If any selection is not publishable
        """
        validate_selections(batch, selections)

        total = len(selections)
        report = DispatchReport(total=total)
        batch.progress = Progress(done=0, total=total)
        t0 = time.perf_counter()

        for index, chunk in enumerate(chunked(selections, self.chunk_size)):
            try:
                storage = await self.client.publish_storage(
                    user_id, [sel.storage_payload() for sel in chunk]
                )
                count = await self.client.publish_catalog([sel.catalog_payload() for sel in chunk])
            except VintnerError as e:
                failure = PartialBatchFailure(
                    f"Publish stopped at chunk {index + 1}: {e}",
                    done=report.done,
                    total=total,
                    chunk_index=index,
                )
                report.failed_chunk = index
                report.error = str(failure)
                LOGGER.error(
                    "publish_chunk_failed",
                    extra={"chunk": index, "done": report.done, "total": total, "reason": str(e)},
                )
                break

            report.published_ids.extend(self._apply_chunk(batch, chunk, storage))
            report.done += len(chunk)
            report.chunks_completed += 1
            report.catalog_count += count
            batch.progress = Progress(done=report.done, total=total)
            LOGGER.info(
                "publish_chunk_done",
                extra={"chunk": index, "size": len(chunk), "done": report.done, "total": total},
            )

        report.elapsed_seconds = time.perf_counter() - t0
        return report
