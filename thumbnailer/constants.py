"""
Thumbnailer: static constants and enum types.
"""
import enum


class DerivationStage(str, enum.Enum):
    """Where a single trigger message is in the derivation pipeline."""
    RECEIVED = "RECEIVED"
    RESOLVING = "RESOLVING"
    STREAMING = "STREAMING"
    DECODING = "DECODING"
    RESIZING = "RESIZING"
    ENCODING = "ENCODING"
    WRITING = "WRITING"


class Disposition(str, enum.Enum):
    """Terminal state of one delivery."""
    ACKNOWLEDGED = "ACKNOWLEDGED"
    SKIPPED = "SKIPPED"  # derivative already present, acknowledged
    FAILED_ACKNOWLEDGED = "FAILED_ACKNOWLEDGED"
    FAILED_UNACKNOWLEDGED = "FAILED_UNACKNOWLEDGED"


# Upload content types accepted by POST /photos → stored file extension
IMAGE_TYPES: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
}

# Derivative encoding
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_EXTENSION = "jpg"
THUMBNAIL_FORMAT = "JPEG"

# Metadata keys on stored blobs
META_CONTENT_TYPE = "contentType"
META_BUSINESS_ID = "businessId"
META_CAPTION = "caption"
META_WIDTH = "width"
META_HEIGHT = "height"

# Streamed write chunk size for derivatives (bytes)
WRITE_CHUNK_SIZE = 64 * 1024
