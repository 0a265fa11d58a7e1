import filetype

from dropbin.models.primitives import MimeType

UNKNOWN_CONTENT_TYPE: MimeType = "unknown"


def classify(data: bytes) -> MimeType:
    """
    Sniff the MIME type from the leading bytes of `data`.

    Caller-declared types and file names are never consulted.
    """
    kind = filetype.guess(data)
    if kind is None:
        return UNKNOWN_CONTENT_TYPE
    return kind.mime
