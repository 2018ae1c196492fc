"""Exception hierarchy for the sync service.

Budget exhaustion and unroutable records are not errors; they are normal
outcomes reported through InvocationResult and never raised.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync service errors."""


class ObjectStoreError(SyncError):
    """A bucket operation failed for a reason other than a missing key."""

    def __init__(self, operation: str, key: str, detail: str) -> None:
        self.operation = operation
        self.key = key
        self.detail = detail
        super().__init__(f"{operation} '{key}' failed: {detail}")


class ConnectivityError(SyncError):
    """A required store could not be reached at invocation start."""


class CheckpointError(SyncError):
    """A persisted checkpoint or history document could not be decoded."""


class CRMRequestError(SyncError):
    """HubSpot answered a batch call with a non-success status.

    Attributes:
        status_code: HTTP status returned by HubSpot.
        messages: Individual error messages parsed from the response body,
            empty if the body was not the standard error envelope.
        body: Raw response text, kept for logging.
    """

    def __init__(
        self,
        status_code: int,
        messages: list[str] | None = None,
        body: str = "",
    ) -> None:
        self.status_code = status_code
        self.messages = messages or []
        self.body = body
        detail = "; ".join(self.messages) if self.messages else body[:200]
        super().__init__(f"HubSpot returned {status_code}: {detail}")
