class DropbinError(Exception):
    """Base class. `status_code` is the HTTP status a transport should answer with."""

    status_code = 500


class PermissionDenied(DropbinError):
    status_code = 403


class ContentRejected(PermissionDenied):
    """The sniffed content type is not in the configured allow-list."""


class QuotaExceeded(DropbinError):
    status_code = 403


class InvalidTTL(DropbinError):
    status_code = 400


class NotFound(DropbinError):
    status_code = 404


class StorageUnavailable(DropbinError):
    status_code = 500


class BlobExistsError(StorageUnavailable):
    """A second write to an id that already has content."""


class RecordExistsError(StorageUnavailable):
    """A record with the same id was inserted first."""
