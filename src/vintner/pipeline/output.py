"""
Per-item run records.

Appends one JSON line per item at the end of a run so batches can be audited
after the process exits.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
import json

from .models import BatchItem


def item_record(item: BatchItem, *, run_id: str | None = None) -> dict[str, Any]:
    """
    Build a JSON-safe record for one item.

    The source blob is never included; only its size is.

    Example:
        >>> rec = item_record(item, run_id="2026-10-19T10:00:00Z")
        >>> rec["status"]
        'formatted'
    """
    result = item.result
    rec: dict[str, Any] = {
        "created_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "item_id": item.id,
        "filename": item.original_filename,
        "normalized_filename": item.normalized_filename,
        "server_filename": item.server_filename,
        "status": item.status.value,
        "error": item.error_message,
        "source_bytes": len(item.source_blob) if item.source_blob is not None else None,
        "publish_ids": dict(item.publish_ids),
        "publish_links": dict(item.publish_links),
        "result": None,
    }
    if result is not None:
        rec["result"] = {
            "ocr_text": result.ocr_text,
            "top_matches": [asdict(m) for m in result.top_matches],
            "selected_option": result.selected_option,
            "final_output": result.final_output,
            "correction_status": result.correction_status.value,
            "needs_review": result.needs_review,
            "match_confidence": result.match_confidence,
            "validated_gid": result.validated_gid,
            "approved": result.approved,
            "timestamps": dict(result.timestamps),
        }
    return rec


def append_record(output_path: Path, record: dict[str, Any]) -> None:
    """
    Append a record to a JSONL file, creating parent directories.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")
