import math
from enum import Enum

from pydantic import BaseModel, Field

from dropbin.models.primitives import BlobId, MimeType, Timestamp, Token

NO_EXPIRY: Timestamp = math.inf


class Visibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"


class BlobSummary(BaseModel):
    """
    What the public listing exposes about a blob.
    """

    id: BlobId
    title: str
    content_type: MimeType
    size_bytes: int
    uploaded_at: Timestamp
    download_count: int


class BlobRecord(BaseModel):
    """
    Metadata kept for every stored blob.

    A record is live while `expires_at` is strictly in the future;
    `NO_EXPIRY` marks uploads without a TTL.
    """

    id: BlobId
    title: str
    content_type: MimeType
    size_bytes: int
    uploaded_at: Timestamp
    expires_at: Timestamp = NO_EXPIRY
    owner_token: Token = Field(repr=False)
    download_count: int = 0
    visibility: Visibility = Visibility.PUBLIC

    def is_live(self, now: Timestamp) -> bool:
        return self.expires_at > now

    def summary(self) -> BlobSummary:
        return BlobSummary(
            id=self.id,
            title=self.title,
            content_type=self.content_type,
            size_bytes=self.size_bytes,
            uploaded_at=self.uploaded_at,
            download_count=self.download_count,
        )


class Admission(BaseModel):
    expires_at: Timestamp
    content_type: MimeType


class Download(BaseModel):
    content_type: MimeType
    data: bytes


class SweepResult(BaseModel):
    expired: int = 0
    orphans: int = 0
    failures: int = 0
