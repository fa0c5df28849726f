"""
Photos: Pydantic V2 response schemas.

Field names are serialized in camelCase (``businessId``, ``contentType``).
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Base(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class PhotoLinks(_Base):
    photo: str
    business: str


class PhotoCreatedResponse(_Base):
    """Returned when an upload is stored and queued for thumbnailing."""
    id: str
    links: PhotoLinks


class PhotoResponse(_Base):
    """Metadata of a stored original.

    ``thumbnail_url`` is where the thumbnail will be served once derived; it
    returns 404 until then (or forever, if derivation failed).
    """
    id: str
    url: str
    thumbnail_url: str
    content_type: str
    business_id: str
    caption: str | None = None
    size: int


class HealthResponse(BaseModel):
    status: str
    service: str
