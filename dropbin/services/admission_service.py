from datetime import timedelta
from typing import Callable

import structlog

from dropbin.exceptions import (
    ContentRejected,
    InvalidTTL,
    PermissionDenied,
    QuotaExceeded,
)
from dropbin.models.config import DropbinConfig
from dropbin.models.primitives import MimeType, Timestamp, Token
from dropbin.models.record import NO_EXPIRY, Admission
from dropbin.repos.metadata_repo import MetadataRepo
from dropbin.repos.token_repo import TokenRepo
from dropbin.utils.sniff_utils import classify

TTL = int | float | timedelta

ContentPredicate = Callable[[MimeType, bytes], bool]


def ttl_seconds(ttl: TTL) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


class AdmissionService:
    def __init__(
        self,
        config: DropbinConfig,
        metadata_repo: MetadataRepo,
        token_repo: TokenRepo,
        classifier: Callable[[bytes], MimeType] = classify,
        content_predicate: ContentPredicate | None = None,
    ):
        self.config = config
        self.metadata_repo = metadata_repo
        self.token_repo = token_repo
        self.classifier = classifier

        if content_predicate is None and config.allowed_content_types is not None:
            allowed = frozenset(config.allowed_content_types)

            def content_predicate(content_type: MimeType, data: bytes) -> bool:
                return content_type in allowed

        self.content_predicate = content_predicate

    async def check_token(self, log: structlog.stdlib.BoundLogger, token: Token):
        if not await self.token_repo.is_token_valid(log, token):
            log.info("Token rejected")
            raise PermissionDenied("Token not valid")

    def compute_expiry(self, ttl: TTL | None, now: Timestamp) -> Timestamp:
        if ttl is None:
            ttl = self.config.default_ttl
        if ttl is None:
            return NO_EXPIRY
        expires_at = now + ttl_seconds(ttl)
        # also rejects NaN
        if not expires_at > now:
            raise InvalidTTL(f"TTL must be positive, got {ttl!r}")
        return expires_at

    async def check_quota(
        self, log: structlog.stdlib.BoundLogger, token: Token, now: Timestamp
    ):
        # not atomic with the insert that follows; concurrent uploads may overshoot
        since = now - self.config.rate_limit_window
        count = await self.metadata_repo.count_uploads(log, token, since, now)
        if count >= self.config.max_uploads_per_window:
            log.info(
                "Upload quota exceeded",
                count=count,
                max_uploads=self.config.max_uploads_per_window,
            )
            raise QuotaExceeded(
                f"At most {self.config.max_uploads_per_window} uploads "
                f"per {self.config.rate_limit_window:g}s"
            )

    def classify(self, data: bytes) -> MimeType:
        content_type = self.classifier(data)
        if self.content_predicate is not None and not self.content_predicate(
            content_type, data
        ):
            raise ContentRejected(f"Content type {content_type} is not accepted")
        return content_type

    async def approve(
        self,
        log: structlog.stdlib.BoundLogger,
        token: Token,
        data: bytes,
        ttl: TTL | None,
        now: Timestamp,
    ) -> Admission:
        """
        Validate an upload before anything is written.

        Raises `PermissionDenied`, `InvalidTTL`, `QuotaExceeded` or
        `ContentRejected`; storage failures while counting surface as
        `StorageUnavailable`.
        """
        await self.check_token(log, token)
        expires_at = self.compute_expiry(ttl, now)
        await self.check_quota(log, token, now)
        content_type = self.classify(data)
        return Admission(expires_at=expires_at, content_type=content_type)
