from dropbin.dropbin import Dropbin
from dropbin.exceptions import (
    DropbinError,
    PermissionDenied,
    ContentRejected,
    QuotaExceeded,
    InvalidTTL,
    NotFound,
    StorageUnavailable,
)
from dropbin.models.config import DropbinConfig
from dropbin.models.record import (
    BlobRecord,
    BlobSummary,
    Download,
    SweepResult,
    Visibility,
)

__all__ = [
    "Dropbin",
    "DropbinConfig",
    "DropbinError",
    "PermissionDenied",
    "ContentRejected",
    "QuotaExceeded",
    "InvalidTTL",
    "NotFound",
    "StorageUnavailable",
    "BlobRecord",
    "BlobSummary",
    "Download",
    "SweepResult",
    "Visibility",
]
