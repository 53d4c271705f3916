"""
Delimited-text snapshot of the current results.
"""

from __future__ import annotations

import csv
import io
import math
from pathlib import Path
from typing import Iterable

from .models import BatchItem


HEADERS = ["Filename", "OCR Text", "Selected Match", "Top3", "Confidence", "Needs Review", "Validated Gid"]
DEFAULT_EXPORT_NAME = "wine-ocr-results.csv"


def top3_summary(item: BatchItem) -> str:
    if not item.result:
        return ""
    return " | ".join(f"{m.option} ({m.score:.2f})" for m in item.result.top_matches[:3])


def export_row(item: BatchItem) -> list[object]:
    result = item.result
    confidence: object = ""
    if result and result.match_confidence is not None and not math.isnan(result.match_confidence):
        confidence = float(result.match_confidence)
    return [
        item.original_filename,
        result.ocr_text if result else "",
        result.selected_option if result else "",
        top3_summary(item),
        confidence,
        "Yes" if result and result.needs_review else "No",
        (result.validated_gid or "") if result else "",
    ]


def serialize(items: Iterable[BatchItem]) -> str:
    """
    Render one CSV row per item under a fixed header.

    Every text field is quoted (``csv.QUOTE_NONNUMERIC``), so commas, quotes
    and newlines in OCR text or match names survive a round trip through any
    CSV reader. Confidence is written unquoted, or as an empty quoted field
    when absent.

    Parameters:
        items: Items in the order they should appear

    Returns:
        CSV text with ``\\n`` line endings
    """
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(HEADERS)
    for item in items:
        writer.writerow(export_row(item))
    return buf.getvalue()


def write_export(items: Iterable[BatchItem], path: Path) -> Path:
    """Write ``serialize(items)`` to ``path``, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(serialize(items), encoding="utf-8")
    return path
