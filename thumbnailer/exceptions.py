"""
Thumbnailer: exception types.

Domain errors (storage, queue, derivation) are plain exceptions raised by the
backends and the worker.  HTTP errors use preset status codes and detail
messages so that callers never need to specify these at the call site; the
photo controller translates domain errors into them.
"""
from __future__ import annotations

from fastapi import HTTPException, status

from thumbnailer.constants import DerivationStage


class ThumbnailerError(Exception):
    """Base class for all domain errors."""


# ── Blob store ───────────────────────────────────────────────────────────────

class StoreError(ThumbnailerError):
    pass


class StoreUnavailable(StoreError):
    """The blob store could not be reached. Transient."""


class NotFound(StoreError):
    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"No blob {key!r} in bucket {bucket!r}")
        self.bucket = bucket
        self.key = key


class InvalidId(StoreError):
    def __init__(self, blob_id: str) -> None:
        super().__init__(f"Not a valid blob identifier: {blob_id!r}")
        self.blob_id = blob_id


# ── Queue ────────────────────────────────────────────────────────────────────

class QueueError(ThumbnailerError):
    pass


class ConnectionFailed(QueueError):
    """Broker unreachable, auth rejected, or the connection dropped."""


# ── Derivation ───────────────────────────────────────────────────────────────
# Every DerivationError is permanent: the message is acknowledged and dropped.

class DerivationError(ThumbnailerError):
    def __init__(self, message: str, stage: DerivationStage) -> None:
        super().__init__(message)
        self.stage = stage


class MalformedTrigger(DerivationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, DerivationStage.RECEIVED)


class UnresolvableReference(DerivationError):
    def __init__(self, blob_id: str, stage: DerivationStage = DerivationStage.RESOLVING) -> None:
        super().__init__(f"Original blob {blob_id} does not exist", stage)
        self.blob_id = blob_id


class UnsupportedMedia(DerivationError):
    pass


# ── HTTP ─────────────────────────────────────────────────────────────────────

class PhotoNotFound(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Photo not found.",
        )


class MediaFileNotFound(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Media file not found.",
        )


class UnsupportedContentType(HTTPException):
    def __init__(self, content_type: str | None) -> None:
        super().__init__(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported content type: {content_type}.",
        )


class UploadFileTooLarge(HTTPException):
    def __init__(self, max_mb: int) -> None:
        super().__init__(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the maximum allowed size of {max_mb} MB.",
        )


class StorageUnavailable(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage is temporarily unavailable. Please try again later.",
        )


class QueueUnavailable(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Photo was stored but could not be scheduled for processing.",
        )
