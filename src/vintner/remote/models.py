"""
Pydantic models for the remote stage service.

Responses are parsed into these models at the client boundary; anything that
fails validation is reported as a ``MalformedResponse``. Unknown fields are
kept (``extra="allow"``) since the backend adds fields freely.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UploadedFile(BaseModel):
    """One entry of a normalized upload response."""

    id: str
    filename: str
    preview_url: str | None = None


class OcrResult(BaseModel):
    """
    OCR outcome for one image.

    ``status`` and ``error`` are optional per-item failure markers; a result
    carrying either is applied as a failure of that item only.
    """

    model_config = ConfigDict(extra="allow")

    original_filename: str | None = None
    new_filename: str | None = None
    formatted_name: str = ""
    status: str | None = None
    error: str | None = None

    @field_validator("formatted_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def failed(self) -> bool:
        return bool(self.error) or (self.status or "").lower() in {"failed", "error"}


class OcrResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    results: list[OcrResult] = Field(default_factory=list)


class Candidate(BaseModel):
    model_config = ConfigDict(extra="allow")

    gid: str | None = None
    text: str = ""
    score: float = 0.0
    reason: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, v: Any) -> float:
        try:
            score = float(v)
        except (TypeError, ValueError):
            return 0.0
        return 0.0 if math.isnan(score) else score

    @field_validator("reason", "text", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class CompareMatches(BaseModel):
    model_config = ConfigDict(extra="allow")

    orig: str = ""
    final: str = ""
    candidates: list[Candidate] = Field(default_factory=list)
    validated_gid: str | None = None
    need_human_review: bool = False
    nhr: bool = False

    @field_validator("orig", "final", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("candidates", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("need_human_review", "nhr", mode="before")
    @classmethod
    def _none_to_false(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def needs_review(self) -> bool:
        return bool(self.need_human_review or self.nhr)


class CompareResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    image: str
    matches: CompareMatches


class CompareResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    results: list[CompareResult]


class StoredFile(BaseModel):
    """A file the storage backend reports as written."""

    model_config = ConfigDict(extra="allow")

    filename: str = ""
    target: str = ""
    drive_id: str | None = None
    web_view_link: str | None = None


class StoragePublishResponse(BaseModel):
    """
    Storage publish outcome.

    Only loosely specified by the backend: every field is optional, and
    ``files_organized`` entries are kept as raw dicts.
    """

    model_config = ConfigDict(extra="allow")

    message: str | None = None
    success: bool | None = None
    uploaded_files: list[StoredFile] = Field(default_factory=list)
    files_organized: list[dict[str, Any]] | None = None
    upload_result: dict[str, Any] | None = None
    errors: list[str] = Field(default_factory=list)

    @field_validator("uploaded_files", "errors", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v


class StorageStructure(BaseModel):
    model_config = ConfigDict(extra="allow")

    root: str | None = None
    input: str | None = None
    output: str | None = None
    upload: str | None = None
    nhr: dict[str, str] | None = None


class CapabilityStatus(BaseModel):
    """Whether the operator's storage account is linked."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    linked: bool = Field(default=False, alias="authenticated")
    structure: StorageStructure | None = None
