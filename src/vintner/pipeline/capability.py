"""
Storage link capability.

The publish stage writes into the operator's storage account, so it is only
available once that account is linked. ``CapabilityGate`` caches the last
known status and refreshes it on demand (after sign-in, or before a publish).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from vintner.errors import ValidationFailure, VintnerError
from vintner.remote.client import StageClient
from vintner.remote.models import StorageStructure


LOGGER = logging.getLogger(__name__)


@dataclass
class CapabilityGate:
    """
    Tracks whether the remote storage account is linked for ``user_id``.

    Attributes:
        client: Stage client used for status checks
        user_id: Operator identifier from the sign-in flow
        linked: Last known link state
        structure: Folder layout reported by the backend, if any
        error: Message of the last failed status check
    """

    client: StageClient
    user_id: str | None
    linked: bool = False
    structure: StorageStructure | None = None
    error: str | None = None
    checking: bool = field(default=False, repr=False)

    async def refresh(self) -> bool:
        """
        Re-check the link status; failures leave the gate unlinked.

        Returns:
            Current link state
        """
        if not self.user_id:
            self.linked = False
            self.error = None
            return False

        self.checking = True
        try:
            status = await self.client.capability_status(self.user_id)
        except VintnerError as e:
            LOGGER.warning("capability_check_failed", extra={"user_id": self.user_id, "reason": str(e)})
            self.linked = False
            self.error = str(e) or "Auth status failed"
            return False
        finally:
            self.checking = False

        self.linked = status.linked
        self.structure = status.structure
        self.error = None
        LOGGER.info("capability_checked", extra={"user_id": self.user_id, "linked": self.linked})
        return self.linked

    def require(self) -> str:
        """
        Return the user id when publishing is allowed.

        Raises:
            ValidationFailure: If no user is signed in or storage is not linked
        """
        if not self.user_id:
            raise ValidationFailure("No user ID found. Please sign in.")
        if not self.linked:
            raise ValidationFailure("Drive not connected")
        return self.user_id
