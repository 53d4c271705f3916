"""
Pipeline state machine.

``Orchestrator`` owns one ``Batch`` and advances its items through

    uploaded -> ocr_done -> formatted -> uploaded_to_publish

with ``failed`` reachable from ``uploaded`` and ``ocr_done``. The OCR and
compare stages each run once per batch over the whole collection and lock on
completion whether they succeed or fail; only ``reset()`` starts over.

Stage triggers never raise remote failures: they set the batch-level error,
log it, and return a ``StageReport``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, fields, replace
from typing import Any, Sequence

from vintner.errors import MalformedResponse, ValidationFailure, VintnerError
from vintner.remote.client import SourceFile, StageClient
from vintner.remote.models import CompareResult, OcrResult

from .capability import CapabilityGate
from .correlation import correlate, key_set
from .dispatcher import DEFAULT_CHUNK_SIZE, DispatchReport, PublishDispatcher, storage_refs
from .models import (
    NHR,
    Batch,
    BatchItem,
    CorrectionStatus,
    Destination,
    FilterCriteria,
    ItemStatus,
    Match,
    ProcessingResult,
    PublishSelection,
)
from .naming import normalize, safe_output_name
from .view import project


LOGGER = logging.getLogger(__name__)

TIME_PER_IMAGE_SECONDS = 15
NO_LABEL_MARKER = "no label"
TOP_MATCHES = 3

_COMPARE_READY = (ItemStatus.OCR_DONE, ItemStatus.FORMATTED, ItemStatus.UPLOADED_TO_PUBLISH)
_REASON_BY_STATUS = {
    CorrectionStatus.SEARCH_FAILED: "search_failed",
    CorrectionStatus.OCR_FAILED: "ocr_failed",
    CorrectionStatus.MANUAL_REJECTION: "manual_rejection",
}


def format_duration(seconds: int) -> str:
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes} min {rest} sec" if minutes else f"{rest} sec"


def estimate_seconds(image_count: int) -> int:
    return image_count * TIME_PER_IMAGE_SECONDS


def classify_correction(needs_review: bool, ocr_text: str) -> CorrectionStatus:
    """
    Seed the correction status from the compare stage's review flag.

    Example:
        >>> classify_correction(True, "NO LABEL detected")
        <CorrectionStatus.OCR_FAILED: 'ocr_failed'>
    """
    if not needs_review:
        return CorrectionStatus.APPROVED
    if NO_LABEL_MARKER in (ocr_text or "").lower():
        return CorrectionStatus.OCR_FAILED
    return CorrectionStatus.SEARCH_FAILED


def rank_candidates(result: CompareResult) -> tuple[Match, ...]:
    """Top candidates by descending score; ties keep response order."""
    ranked = sorted(result.matches.candidates, key=lambda c: c.score, reverse=True)
    return tuple(Match(option=c.text, score=c.score, reason=c.reason) for c in ranked[:TOP_MATCHES])


@dataclass
class StageReport:
    """
    Outcome of one stage trigger.

    Attributes:
        stage: ``upload``, ``ocr`` or ``compare``
        ran: False when the trigger was a no-op (locked, busy or empty)
        matched: Items that advanced
        failed: Items that ended in ``failed``
        unmatched: Items the response did not cover
        elapsed_seconds: Wall-clock duration of the remote call and apply
        error: Batch-level message, if the stage failed
    """

    stage: str
    ran: bool = True
    matched: int = 0
    failed: int = 0
    unmatched: int = 0
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.ran and self.error is None


class Orchestrator:
    """
    Drives one batch through upload, OCR, compare and publish.

    Parameters:
        client: Remote stage client
        user_id: Operator identifier from sign-in, used for storage calls
        chunk_size: Publish chunk size
        gate: Capability gate (built from ``client`` when omitted)
        dispatcher: Publish dispatcher (built from ``client`` when omitted)

    Example:
        >>> orch = Orchestrator(client, user_id="u-1")
        >>> await orch.upload([SourceFile("label.jpg", data)])
        >>> await orch.run_ocr_stage()
        >>> await orch.run_compare_stage()
        >>> print(serialize(orch.batch.items))
    """

    def __init__(
        self,
        client: StageClient,
        *,
        user_id: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        gate: CapabilityGate | None = None,
        dispatcher: PublishDispatcher | None = None,
    ) -> None:
        self.client = client
        self.gate = gate or CapabilityGate(client=client, user_id=user_id)
        self.dispatcher = dispatcher or PublishDispatcher(client, chunk_size=chunk_size)
        self.batch = Batch()
        self.health_status: str | None = None
        self.catalog_refresh_result: str | None = None
        # Unlike the running indicators, cancel() does not clear this.
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Basic controls
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Discard the batch; responses still in flight land on the old one."""
        self.batch = Batch()
        self.health_status = None
        self.catalog_refresh_result = None
        LOGGER.info("batch_reset")

    def cancel(self) -> None:
        """Stop waiting on running stages without discarding their results."""
        self.batch.cancelled = True
        self.batch.ocr_running = False
        self.batch.compare_running = False
        LOGGER.info("batch_cancelled", extra={"in_flight": sorted(self._in_flight)})

    def set_filter(self, criteria: FilterCriteria) -> None:
        self.batch.filter = criteria

    def visible_items(self) -> list[BatchItem]:
        return project(self.batch.items, self.batch.filter)

    @property
    def can_run_compare(self) -> bool:
        batch = self.batch
        ready = any(item.status in _COMPARE_READY for item in batch.items)
        return ready and not batch.compare_stage_locked

    def _fail(self, batch: Batch, stage: str, exc: VintnerError, fallback: str) -> str:
        message = str(exc) or fallback
        batch.error = message
        LOGGER.error(f"{stage}_failed", extra={"stage": stage, "reason": message, "kind": type(exc).__name__})
        return message

    # ------------------------------------------------------------------
    # Collaborator checks
    # ------------------------------------------------------------------

    async def check_health(self) -> str | None:
        batch = self.batch
        batch.error = None
        try:
            self.health_status = await self.client.health()
        except VintnerError as e:
            self._fail(batch, "health", e, "Health check failed")
            return None
        return self.health_status

    async def refresh_capability(self) -> bool:
        return await self.gate.refresh()

    async def refresh_catalog(self) -> str | None:
        batch = self.batch
        batch.error = None
        self.catalog_refresh_result = None
        try:
            self.catalog_refresh_result = await self.client.refresh_catalog_cache()
        except VintnerError as e:
            self._fail(batch, "catalog_refresh", e, "Refresh failed")
            return None
        return self.catalog_refresh_result

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, files: Sequence[SourceFile]) -> StageReport:
        """
        Upload files and append one ``uploaded`` item per returned entry.

        Each entry is paired with its source blob by normalized filename,
        then by position; a blob is never given to two items. Uploads are
        refused once OCR has started, since the OCR lock is one-shot.
        """
        batch = self.batch
        report = StageReport(stage="upload")

        if batch.ocr_stage_locked or "ocr" in self._in_flight:
            report.ran = False
            report.error = batch.error = "OCR already started for this batch; reset to upload more files"
            return report
        if not files:
            report.ran = False
            report.error = batch.error = "No files selected"
            return report

        batch.error = None
        t0 = time.perf_counter()
        self._in_flight.add("upload")
        try:
            uploads = await self.client.upload(files)
            existing = {item.id for item in batch.items}
            fresh = [u.id for u in uploads if u.id not in existing]
            if len(set(fresh)) != len(uploads):
                raise MalformedResponse("Upload returned duplicate item ids")
        except VintnerError as e:
            report.error = self._fail(batch, "upload", e, "Upload failed")
            return report
        finally:
            self._in_flight.discard("upload")
            report.elapsed_seconds = time.perf_counter() - t0
            batch.timings["upload"] = report.elapsed_seconds

        pairing = correlate(
            [(normalize(u.filename),) for u in uploads],
            [(normalize(f.filename),) for f in files],
            stage="upload",
        )
        blob_for = {a.item_index: files[a.result_index].content for a in pairing.assignments}
        new_items = [
            BatchItem.create(u.id, u.filename, source_blob=blob_for.get(idx))
            for idx, u in enumerate(uploads)
        ]

        batch.items = batch.items + tuple(new_items)
        report.matched = len(new_items)
        LOGGER.info(
            "upload_done",
            extra={"files": len(files), "items": len(new_items), "elapsed_s": round(report.elapsed_seconds, 3)},
        )

        if self.gate.linked:
            await self._mirror_inputs(batch, new_items)
        return report

    async def _mirror_inputs(self, batch: Batch, items: Sequence[BatchItem]) -> None:
        """Copy new uploads into the storage input folder; best-effort."""
        user_id = self.gate.user_id
        if not user_id:
            return
        for item in items:
            if batch.cancelled:
                break
            sel = PublishSelection(
                item_id=item.id,
                image=item.original_filename,
                chosen_name=item.original_filename,
                destination=Destination.INPUT,
            )
            try:
                resp = await self.client.publish_storage(user_id, [sel.storage_payload()])
            except VintnerError as e:
                LOGGER.warning("input_mirror_failed", extra={"item_id": item.id, "reason": str(e)})
                continue
            current = batch.get(item.id)
            if current is None:
                continue
            drive_id, link = storage_refs(current, sel, resp)
            if drive_id or link:
                ids = {**current.publish_ids, **({"input": str(drive_id)} if drive_id else {})}
                links = {**current.publish_links, **({"input": str(link)} if link else {})}
                batch.replace_items({item.id: current.evolve(publish_ids=ids, publish_links=links)})

    # ------------------------------------------------------------------
    # OCR
    # ------------------------------------------------------------------

    async def run_ocr_stage(self) -> StageReport:
        """
        Run OCR over every item in the batch, once.

        Matched results move items to ``ocr_done`` (or ``failed`` when the
        result reports a per-item failure). The stage locks on success and on
        failure; items that are still ``uploaded`` afterwards can never be
        processed and are marked ``failed``. An empty batch reports
        "No files to process" and locks without sending a request.
        """
        batch = self.batch
        if batch.ocr_stage_locked or self._in_flight & {"ocr", "upload"}:
            return StageReport(stage="ocr", ran=False)
        submitted = batch.items

        report = StageReport(stage="ocr")
        batch.error = None
        batch.cancelled = False
        batch.ocr_running = True
        self._in_flight.add("ocr")
        t0 = time.perf_counter()
        LOGGER.info(
            "ocr_stage_start",
            extra={"items": len(submitted), "estimate": format_duration(estimate_seconds(len(submitted)))},
        )

        try:
            if not submitted:
                raise ValidationFailure("No files to process")
            response = await self.client.ocr([item.id for item in submitted])
            self._apply_ocr(batch, submitted, response.results, report)
        except VintnerError as e:
            report.error = self._fail(batch, "ocr", e, "OCR failed")
        finally:
            report.failed += self._fail_leftovers(batch, submitted, report.error)
            batch.ocr_stage_locked = True
            batch.ocr_running = False
            self._in_flight.discard("ocr")
            report.elapsed_seconds = time.perf_counter() - t0
            batch.timings["ocr"] = report.elapsed_seconds

        LOGGER.info(
            "ocr_stage_done",
            extra={
                "matched": report.matched,
                "failed": report.failed,
                "unmatched": report.unmatched,
                "elapsed_s": round(report.elapsed_seconds, 3),
                "cancelled": batch.cancelled,
            },
        )
        return report

    def _apply_ocr(
        self,
        batch: Batch,
        submitted: Sequence[BatchItem],
        results: Sequence[OcrResult],
        report: StageReport,
    ) -> None:
        corr = correlate(
            [(item.normalized_filename,) for item in submitted],
            [key_set([r.new_filename, r.original_filename]) for r in results],
            stage="ocr",
        )
        updates: dict[str, BatchItem] = {}
        for a in corr.assignments:
            current = batch.get(submitted[a.item_index].id)
            if current is None:
                continue
            res = results[a.result_index]
            if res.failed:
                updates[current.id] = current.evolve(
                    status=ItemStatus.FAILED,
                    error_message=res.error or "OCR failed",
                )
                report.failed += 1
                continue
            updates[current.id] = current.evolve(
                status=ItemStatus.OCR_DONE,
                server_filename=res.new_filename or current.server_filename,
                error_message=None,
                result=ProcessingResult(
                    ocr_text=res.formatted_name,
                    correction_status=CorrectionStatus.NEEDS_REVIEW,
                ).stamped("ocr_done"),
            )
            report.matched += 1
        report.unmatched = len(corr.unmatched_items)
        batch.replace_items(updates)

    def _fail_leftovers(self, batch: Batch, submitted: Sequence[BatchItem], error: str | None) -> int:
        updates: dict[str, BatchItem] = {}
        for item in submitted:
            current = batch.get(item.id)
            if current is not None and current.status is ItemStatus.UPLOADED:
                updates[current.id] = current.evolve(
                    status=ItemStatus.FAILED,
                    error_message=error or "No OCR result returned for this file",
                )
        batch.replace_items(updates)
        return len(updates)

    # ------------------------------------------------------------------
    # Compare
    # ------------------------------------------------------------------

    async def run_compare_stage(self) -> StageReport:
        """
        Match OCR text against catalog candidates for every non-failed item, once.

        Enabled as soon as any item has passed OCR; it does not wait for the
        rest. Locks on success and on failure.
        """
        batch = self.batch
        if not self.can_run_compare or "compare" in self._in_flight:
            return StageReport(stage="compare", ran=False)
        submitted = tuple(item for item in batch.items if item.status is not ItemStatus.FAILED)

        report = StageReport(stage="compare")
        batch.error = None
        batch.compare_running = True
        self._in_flight.add("compare")
        t0 = time.perf_counter()

        try:
            if not submitted:
                raise ValidationFailure("No successful OCR items to compare")
            response = await self.client.compare([item.id for item in submitted])
            self._apply_compare(batch, submitted, response.results, report)
        except VintnerError as e:
            report.error = self._fail(batch, "compare", e, "Compare failed, try again")
        finally:
            batch.compare_stage_locked = True
            batch.compare_running = False
            self._in_flight.discard("compare")
            report.elapsed_seconds = time.perf_counter() - t0
            batch.timings["compare"] = report.elapsed_seconds

        LOGGER.info(
            "compare_stage_done",
            extra={
                "matched": report.matched,
                "unmatched": report.unmatched,
                "elapsed_s": round(report.elapsed_seconds, 3),
                "cancelled": batch.cancelled,
            },
        )
        return report

    def _apply_compare(
        self,
        batch: Batch,
        submitted: Sequence[BatchItem],
        results: Sequence[CompareResult],
        report: StageReport,
    ) -> None:
        corr = correlate(
            [key_set([item.normalized_filename, item.server_filename]) for item in submitted],
            [key_set([r.image]) for r in results],
            stage="compare",
        )
        updates: dict[str, BatchItem] = {}
        for a in corr.assignments:
            current = batch.get(submitted[a.item_index].id)
            if current is None:
                continue
            found = results[a.result_index]
            top = rank_candidates(found)
            best = top[0] if top else None
            needs_review = found.matches.needs_review
            previous = current.result or ProcessingResult()

            if needs_review:
                selected, final = NHR, ""
            else:
                selected = best.option if best else NHR
                final = found.matches.final or (best.option if best else previous.final_output)

            result = replace(
                previous,
                ocr_text=found.matches.orig or previous.ocr_text,
                top_matches=top,
                selected_option=selected,
                final_output=final,
                match_confidence=best.score if best else None,
                needs_review=needs_review,
                validated_gid=found.matches.validated_gid,
                correction_status=classify_correction(needs_review, found.matches.orig),
            ).stamped("formatted")
            updates[current.id] = current.evolve(status=ItemStatus.FORMATTED, result=result)
            report.matched += 1
        report.unmatched = len(corr.unmatched_items)
        batch.replace_items(updates)

    # ------------------------------------------------------------------
    # Operator edits
    # ------------------------------------------------------------------

    def update_result(self, item_id: str, **changes: Any) -> bool:
        """
        Apply operator corrections to one item's result.

        ``top_matches`` is owned by the compare stage and cannot be edited.

        Returns:
            False (with the batch error set) if the edit was refused
        """
        batch = self.batch
        item = batch.get(item_id)
        allowed = {f.name for f in fields(ProcessingResult)} - {"top_matches", "timestamps"}
        try:
            if item is None:
                raise ValidationFailure(f"Unknown item: {item_id}")
            if item.result is None:
                raise ValidationFailure("File has no processing result")
            unknown = set(changes) - allowed
            if unknown:
                raise ValidationFailure(f"Cannot edit result field(s): {', '.join(sorted(unknown))}")
            if "correction_status" in changes:
                try:
                    changes["correction_status"] = CorrectionStatus(changes["correction_status"])
                except ValueError as e:
                    raise ValidationFailure(f"Unknown correction status: {changes['correction_status']}") from e
        except ValidationFailure as e:
            self._fail(batch, "update", e, "Update failed")
            return False

        batch.replace_items({item_id: item.evolve(result=replace(item.result, **changes))})
        batch.error = None
        return True

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def selection_for(self, item: BatchItem, *, rejection_reason: str | None = None) -> PublishSelection:
        """
        Build the publish selection for a formatted item.

        Approved items go to ``output``; everything else goes to the
        needs-review folder with ``rejection_reason``, or a reason derived from
        the correction status (``others`` when none applies).

        Raises:
            ValidationFailure: If the item has no processing result
        """
        result = item.result
        if result is None:
            raise ValidationFailure("File has no processing result")

        chosen = safe_output_name(result.final_output or result.selected_option)
        if result.correction_status is CorrectionStatus.APPROVED:
            return PublishSelection(
                item_id=item.id,
                image=item.original_filename,
                chosen_name=chosen,
                destination=Destination.OUTPUT,
                catalog_gid=result.validated_gid,
            )
        return PublishSelection(
            item_id=item.id,
            image=item.original_filename,
            chosen_name=chosen,
            destination=Destination.NEEDS_REVIEW,
            rejection_reason=rejection_reason or _REASON_BY_STATUS.get(result.correction_status, "others"),
            catalog_gid=result.validated_gid,
        )

    def publishable_selections(self, *, approved_only: bool = False) -> list[PublishSelection]:
        """Selections for every formatted item, in collection order."""
        out: list[PublishSelection] = []
        for item in self.batch.items:
            if item.status is not ItemStatus.FORMATTED or item.result is None:
                continue
            if approved_only and not item.result.approved:
                continue
            out.append(self.selection_for(item))
        return out

    async def publish(self, selections: Sequence[PublishSelection]) -> DispatchReport | None:
        """
        Publish selections to storage and catalog in chunks.

        Returns:
            DispatchReport, or None when the publish was refused locally
            (storage not linked, invalid selection, already publishing)
        """
        batch = self.batch
        if batch.publishing:
            return None
        batch.error = None
        batch.message = None

        try:
            user_id = self.gate.require()
        except ValidationFailure as e:
            self._fail(batch, "publish", e, "Upload to Drive/Shopify failed")
            return None

        batch.publishing = True
        try:
            report = await self.dispatcher.dispatch(batch, selections, user_id=user_id)
        except ValidationFailure as e:
            self._fail(batch, "publish", e, "Upload to Drive/Shopify failed")
            return None
        finally:
            batch.publishing = False

        batch.timings["publish"] = report.elapsed_seconds
        if report.error:
            batch.error = report.error
        else:
            batch.message = f"Successfully uploaded {report.done} item(s) to Drive & Shopify"
        LOGGER.info(
            "publish_done",
            extra={"done": report.done, "total": report.total, "catalog_count": report.catalog_count},
        )
        return report

    async def publish_item(self, item_id: str, *, rejection_reason: str | None = None) -> bool:
        """Publish a single formatted item; True when it was published."""
        batch = self.batch
        item = batch.get(item_id)
        if item is None:
            batch.error = "Upload failed: File not found"
            return False
        try:
            selection = self.selection_for(item, rejection_reason=rejection_reason)
        except ValidationFailure as e:
            self._fail(batch, "publish", e, "Upload failed")
            return False
        report = await self.publish([selection])
        return bool(report and report.success)

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    async def process(self, files: Sequence[SourceFile]) -> list[StageReport]:
        """
        Upload, OCR and compare in sequence.

        Stops after any stage that fails or when the batch is cancelled.
        """
        reports = [await self.upload(files)]
        for stage in (self.run_ocr_stage, self.run_compare_stage):
            if self.batch.cancelled or not reports[-1].success:
                break
            reports.append(await stage())
        return reports
