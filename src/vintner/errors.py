"""
Error taxonomy for the vintner pipeline.

Remote-stage failures are reduced to these types at the client boundary so
the orchestrator only ever has to catch ``VintnerError``.
"""

from __future__ import annotations


class VintnerError(Exception):
    """Base class for every failure the orchestrator reports to the operator."""


class NetworkFailure(VintnerError):
    """Transport error, timeout, or non-2xx response from a remote stage."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(VintnerError):
    """Remote stage answered, but with a shape we do not recognise."""


class ValidationFailure(VintnerError):
    """A local precondition failed before anything was sent."""


class PartialBatchFailure(VintnerError):
    """
    A publish chunk failed after earlier chunks completed.

    Attributes:
        done: Number of selections published before the failure
        total: Number of selections in the dispatch
        chunk_index: Zero-based index of the chunk that failed
    """

    def __init__(self, message: str, *, done: int, total: int, chunk_index: int) -> None:
        super().__init__(message)
        self.done = done
        self.total = total
        self.chunk_index = chunk_index
