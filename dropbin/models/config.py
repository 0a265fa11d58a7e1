from typing import Literal, Optional

import pydantic
from pydantic import ConfigDict, Field


class StrictModel(pydantic.BaseModel):
    model_config = ConfigDict(
        extra="forbid",
    )


class MetadataConfig(StrictModel):
    backend: Literal["memory", "sql"] = "sql"
    database_url: Optional[str] = Field(
        default="sqlite:///dropbin.db",
        description="SQLAlchemy URL, e.g. `sqlite:///dropbin.db` or `postgresql://host/db`; required for `sql`",
    )


class BlobsConfig(StrictModel):
    backend: Literal["memory", "filesystem", "redis", "s3"] = "filesystem"
    upload_directory: str = Field(
        default="./upload",
        description="Where `filesystem` stores blob content",
    )
    bucket_name: Optional[str] = Field(
        default=None,
        description="S3 bucket; defaults to the `BUCKET_NAME` environment variable",
    )
    endpoint_url: Optional[str] = Field(
        default=None,
        description="S3 endpoint; defaults to the `AWS_ENDPOINT_URL` environment variable",
    )
    prefix: str = "blobs"


class DropbinConfig(StrictModel):
    id_length: int = Field(default=6, ge=1)

    rate_limit_window: float = Field(
        default=3600,
        gt=0,
        description="Seconds of upload history counted against a token",
    )
    max_uploads_per_window: int = Field(default=10, ge=0)

    default_ttl: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds applied when an upload does not declare a TTL; null keeps such uploads forever",
    )

    sweep_interval: float = Field(default=60, gt=0)
    sweep_on_startup: bool = True

    check_token: bool = True
    tokens: list[str] = Field(
        default_factory=list,
        description="Accepted tokens; when empty and `check_token` is set, tokens are looked up in Redis",
    )

    allowed_content_types: Optional[list[str]] = Field(
        default=None,
        description="Sniffed MIME types accepted for upload; null accepts any content",
    )

    storage_timeout: float = Field(default=5, gt=0)

    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    blobs: BlobsConfig = Field(default_factory=BlobsConfig)
