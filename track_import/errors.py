"""Error taxonomy shared by the import pipeline.

Every failure that can end an import job is a ``PipelineError`` subclass
carrying an ``ImportErrorKind`` so callers can branch on the kind instead of
parsing messages (e.g. trigger re-authentication on ``AUTH_EXPIRED``).
"""

from __future__ import annotations

from enum import StrEnum

GATEWAY_BODY_LIMIT = 500


class ImportErrorKind(StrEnum):
    """Machine-checkable failure categories."""

    AUTH_EXPIRED = "auth_expired"
    TRANSIENT_NETWORK = "transient_network"
    GATEWAY_ERROR = "gateway_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    OTHER = "other"


class PipelineError(Exception):
    """Base class for import pipeline failures."""

    kind: ImportErrorKind = ImportErrorKind.OTHER

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthExpiredError(PipelineError):
    """The remote storage token is missing, invalid or expired.

    Never retried automatically; the caller must re-authenticate.
    """

    kind = ImportErrorKind.AUTH_EXPIRED


class TransientNetworkError(PipelineError):
    """Connectivity problem or 5xx/429 from a collaborator. Safe to retry."""

    kind = ImportErrorKind.TRANSIENT_NETWORK


class GatewayError(PipelineError):
    """Non-success response from the transcode/store backend."""

    kind = ImportErrorKind.GATEWAY_ERROR

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body[:GATEWAY_BODY_LIMIT]
        if status_code is not None:
            message = f"{message} ({status_code}): {self.body}"
        super().__init__(message)


class StepTimeoutError(PipelineError):
    """A pipeline step exceeded its deadline."""

    kind = ImportErrorKind.TIMEOUT


class ImportValidationError(PipelineError):
    """A collaborator broke its contract (e.g. no durable storage reference)."""

    kind = ImportErrorKind.VALIDATION_ERROR


class RemoteListingError(PipelineError):
    """Remote listing failed for a reason that is neither auth nor transient."""

    kind = ImportErrorKind.OTHER


class DuplicateImportError(Exception):
    """A non-terminal job already exists for this source."""

    def __init__(self, source_ref: str) -> None:
        self.source_ref = source_ref
        super().__init__(f"An import is already in progress for {source_ref}")


class JobStateError(Exception):
    """Operation not allowed in the job's current state (e.g. retrying a success)."""
