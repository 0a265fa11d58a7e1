import random
import string

from dropbin.models.primitives import BlobId

ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase


class IdentifierService:
    """
    Draws short base62 ids.

    Only uniformity matters here, not unpredictability, so the default
    `random.Random` source is fine. Uniqueness against stored ids is checked
    by the caller.
    """

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def allocate(self, length: int) -> BlobId:
        if length < 1:
            raise ValueError(f"Identifier length must be positive, got {length}")
        return "".join(self.rng.choices(ALPHABET, k=length))

    @staticmethod
    def is_valid(blob_id: str, length: int | None = None) -> bool:
        if not blob_id:
            return False
        if length is not None and len(blob_id) != length:
            return False
        return all(c in ALPHABET for c in blob_id)
