"""
Upload response shape normalization.

The upload endpoint has answered with a bare list of ids, a list of objects,
either of those wrapped under one of several keys, or a single object. All of
them are reduced here to ``list[UploadedFile]`` so nothing past the client
sees the variance.
"""

from __future__ import annotations

import time
from typing import Any, Sequence

from pydantic import ValidationError

from vintner.errors import MalformedResponse

from .models import UploadedFile


WRAPPER_KEYS = ("items", "uploads", "files", "data", "results", "files_uploaded")
ID_KEYS = ("id", "fileId", "uuid", "_id", "uploadId")
NAME_KEYS = ("filename", "name")


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _first(obj: dict[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        v = obj.get(k)
        if v not in (None, ""):
            return v
    return None


def synthesize_id(index: int) -> str:
    """Locally generated id for an upload entry the backend did not identify."""
    return f"{int(time.time() * 1000)}_{index}"


def _fallback_name(filenames: Sequence[str], index: int) -> str:
    if index < len(filenames):
        return filenames[index]
    return f"file_{index + 1}"


def _from_list(entries: list[Any], filenames: Sequence[str]) -> list[UploadedFile]:
    if isinstance(entries[0], str):
        return [
            UploadedFile(id=str(v), filename=_fallback_name(filenames, i))
            for i, v in enumerate(entries)
        ]

    if isinstance(entries[0], dict):
        out: list[UploadedFile] = []
        for i, obj in enumerate(entries):
            if not isinstance(obj, dict):
                continue
            raw_id = _first(obj, ID_KEYS)
            name = _first(obj, NAME_KEYS) or _fallback_name(filenames, i)
            out.append(
                UploadedFile(
                    id=str(raw_id) if raw_id is not None else synthesize_id(i),
                    filename=str(name),
                    preview_url=obj.get("previewUrl") or obj.get("preview_url"),
                )
            )
        return out

    return []


def normalize_upload_items(raw: Any, filenames: Sequence[str]) -> list[UploadedFile]:
    """
    Reduce any known upload response shape to a list of ``UploadedFile``.

    The response itself is tried first, then each wrapper key in turn; the
    first non-empty list that yields entries wins. A single object with an id
    is accepted last.

    Parameters:
        raw: Decoded JSON body of the upload response
        filenames: Names of the submitted files, in submission order

    Returns:
        Normalized entries (possibly empty)

    Example:
        >>> normalize_upload_items(["a1", "b2"], ["A.jpg", "B.jpg"])[1].filename
        'B.jpg'
    """
    candidates: list[Any] = [raw]
    if isinstance(raw, dict):
        candidates.extend(raw.get(k) for k in WRAPPER_KEYS)

    for candidate in candidates:
        entries = _as_list(candidate)
        if not entries:
            continue
        items = _from_list(entries, filenames)
        if items:
            return items

    if isinstance(raw, dict):
        raw_id = _first(raw, ID_KEYS[:3])
        if raw_id is not None:
            name = _first(raw, NAME_KEYS) or (filenames[0] if filenames else "file")
            return [UploadedFile(id=str(raw_id), filename=str(name))]

    return []


def pad_upload_items(items: list[UploadedFile], filenames: Sequence[str]) -> list[UploadedFile]:
    """
    Append synthesized entries for submitted files the response left out.

    Only applies when the response is shorter than the submission; a file is
    considered present when an entry carries its exact name. At most the
    shortfall is added, so the result never outnumbers the submission.
    """
    if len(items) >= len(filenames):
        return items
    present = {u.filename for u in items}
    missing = [name for name in filenames if name not in present][: len(filenames) - len(items)]
    extras = [
        UploadedFile(id=synthesize_id(len(items) + n), filename=name)
        for n, name in enumerate(missing)
    ]
    return items + extras


def parse_upload_response(raw: Any, filenames: Sequence[str]) -> list[UploadedFile]:
    """
    Normalize, pad, and check an upload response.

    Raises:
        MalformedResponse: If no entry can be recovered at all, or an entry
            fails validation
    """
    try:
        items = pad_upload_items(normalize_upload_items(raw, filenames), filenames)
    except ValidationError as e:
        raise MalformedResponse("Upload succeeded but response format was unexpected") from e
    if not items:
        raise MalformedResponse("Upload succeeded but response format was unexpected")
    return items
