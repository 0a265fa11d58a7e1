import asyncio
import time
from enum import Enum
from typing import Callable

import structlog

from dropbin.exceptions import NotFound, RecordExistsError, StorageUnavailable
from dropbin.models.config import DropbinConfig
from dropbin.models.primitives import BlobId, Timestamp, Token
from dropbin.models.record import (
    BlobRecord,
    BlobSummary,
    Download,
    SweepResult,
    Visibility,
)
from dropbin.repos.blob_repo import BlobRepo
from dropbin.repos.metadata_repo import MetadataRepo
from dropbin.services.admission_service import TTL, AdmissionService
from dropbin.services.identifier_service import IdentifierService


class UploadState(str, Enum):
    VALIDATING = "validating"
    ALLOCATING = "allocating"
    METADATA_COMMITTED = "metadata_committed"
    CONTENT_COMMITTED = "content_committed"
    ROLLED_BACK = "rolled_back"


class LifecycleService:
    """
    Owns the consistency contract between the metadata and blob stores.

    Uploads write the record first and the content second, rolling the record
    back if the content write fails. Expired blobs are purged record first,
    content second, either lazily when accessed or by `sweep`. Cleanup failures
    are logged, never raised.
    """

    def __init__(
        self,
        config: DropbinConfig,
        metadata_repo: MetadataRepo,
        blob_repo: BlobRepo,
        admission_service: AdmissionService,
        identifier_service: IdentifierService | None = None,
        clock: Callable[[], Timestamp] = time.time,
    ):
        self.config = config
        self.metadata_repo = metadata_repo
        self.blob_repo = blob_repo
        self.admission_service = admission_service
        self.identifier_service = identifier_service or IdentifierService()
        self.clock = clock

    def _now(self, now: Timestamp | None) -> Timestamp:
        if now is None:
            return self.clock()
        return now

    async def allocate_id(self, log: structlog.stdlib.BoundLogger) -> BlobId:
        # unbounded: terminates as long as the id space isn't exhausted
        while True:
            blob_id = self.identifier_service.allocate(self.config.id_length)
            if await self.metadata_repo.exists(log, blob_id):
                log.debug("Identifier taken by a record", blob_id=blob_id)
                continue
            if await self.blob_repo.exists(log, blob_id):
                log.debug("Identifier taken by content", blob_id=blob_id)
                continue
            return blob_id

    async def ingest(
        self,
        log: structlog.stdlib.BoundLogger,
        data: bytes,
        token: Token,
        title: str,
        ttl: TTL | None = None,
        visibility: Visibility = Visibility.PUBLIC,
        now: Timestamp | None = None,
    ) -> BlobId:
        """
        Store `data` and return its new id.

        Parameters
        ----------
        ttl : None | int | float | timedelta
            seconds until expiry; `None` falls back to the configured default TTL,
            and without one the blob never expires
        """
        now = self._now(now)
        log = log.bind(title=title, size_bytes=len(data))

        log.debug("Upload state", state=UploadState.VALIDATING)
        admission = await self.admission_service.approve(log, token, data, ttl, now)

        while True:
            log.debug("Upload state", state=UploadState.ALLOCATING)
            blob_id = await self.allocate_id(log)
            log = log.bind(blob_id=blob_id)
            record = BlobRecord(
                id=blob_id,
                title=title,
                content_type=admission.content_type,
                size_bytes=len(data),
                uploaded_at=now,
                expires_at=admission.expires_at,
                owner_token=token,
                download_count=0,
                visibility=visibility,
            )
            try:
                await self.metadata_repo.insert(log, record)
            except RecordExistsError:
                # another upload inserted the same id since we checked
                log.info("Identifier claimed concurrently, allocating again")
                continue
            except StorageUnavailable:
                log.warning("Upload state", state=UploadState.ROLLED_BACK)
                raise
            break
        log.debug("Upload state", state=UploadState.METADATA_COMMITTED)

        try:
            await self.blob_repo.save(log, blob_id, data)
        except (Exception, asyncio.CancelledError):
            await self._rollback(log, blob_id)
            raise

        log.info(
            "Upload state",
            state=UploadState.CONTENT_COMMITTED,
            content_type=admission.content_type,
            expires_at=admission.expires_at,
            visibility=visibility,
        )
        return blob_id

    async def _rollback(self, log: structlog.stdlib.BoundLogger, blob_id: BlobId):
        try:
            await self.metadata_repo.delete(log, blob_id)
        except StorageUnavailable as e:
            log.error(
                "Failed to roll back record after content write failure",
                exc_info=e,
            )
        log.warning("Upload state", state=UploadState.ROLLED_BACK)

    async def retrieve(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        now: Timestamp | None = None,
    ) -> Download:
        now = self._now(now)
        log = log.bind(blob_id=blob_id)

        if not IdentifierService.is_valid(blob_id):
            raise NotFound(f"No blob {blob_id!r}")

        record = await self.metadata_repo.get(log, blob_id)
        if record is None:
            raise NotFound(f"No blob {blob_id!r}")

        if not record.is_live(now):
            log.info("Blob expired on access", expires_at=record.expires_at)
            await self._purge(log, blob_id, now)
            raise NotFound(f"No blob {blob_id!r}")

        data = await self.blob_repo.retrieve(log, blob_id)
        if data is None:
            # record committed, content still being written (or lost)
            log.warning("Record without content")
            raise NotFound(f"No blob {blob_id!r}")

        try:
            await self.metadata_repo.increment_downloads(log, blob_id)
        except StorageUnavailable as e:
            log.warning("Failed to count download", exc_info=e)

        return Download(content_type=record.content_type, data=data)

    async def list_public(
        self,
        log: structlog.stdlib.BoundLogger,
        token: Token,
        now: Timestamp | None = None,
    ) -> list[BlobSummary]:
        now = self._now(now)
        await self.admission_service.check_token(log, token)
        records = await self.metadata_repo.list_public(log, now)
        return [record.summary() for record in records]

    async def _purge(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        now: Timestamp,
    ) -> bool | None:
        """
        Delete the record if it is still dead at `now`, then its content.

        Returns `None` when there was no dead record to remove: another purge got
        there first, and the id may already belong to a new upload whose content
        must stay. Content left behind by a failed delete has no record, so the
        next orphan scan removes it.
        """
        try:
            removed = await self.metadata_repo.delete_if_expired(log, blob_id, now)
        except StorageUnavailable as e:
            log.error("Failed to delete blob record", exc_info=e)
            return False
        if not removed:
            return None
        try:
            await self.blob_repo.delete(log, blob_id)
        except StorageUnavailable as e:
            log.error("Failed to delete blob content", exc_info=e)
            return False
        return True

    async def _purge_if_expired(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        now: Timestamp,
    ) -> bool | None:
        # the id may have been purged lazily since it was listed, and a record
        # expiring exactly at `now` waits for the next sweep
        try:
            record = await self.metadata_repo.get(log, blob_id)
        except StorageUnavailable as e:
            log.error("Failed to read expired record", exc_info=e)
            return False
        if record is None or record.expires_at >= now:
            return None
        return await self._purge(log, blob_id, now)

    async def sweep(
        self,
        log: structlog.stdlib.BoundLogger,
        now: Timestamp | None = None,
    ) -> SweepResult:
        """
        Purge every record with `expires_at < now`, then remove content that has
        no record.

        A record expiring exactly at `now` is left for the next sweep;
        `retrieve` already refuses to serve it.
        """
        now = self._now(now)
        result = SweepResult()

        try:
            expired_ids = await self.metadata_repo.list_expired(log, now)
        except StorageUnavailable as e:
            log.error("Failed to list expired records", exc_info=e)
            expired_ids = []
            result.failures += 1

        for blob_id in expired_ids:
            purged = await self._purge_if_expired(
                log.bind(blob_id=blob_id), blob_id, now
            )
            if purged is None:
                continue
            if purged:
                result.expired += 1
            else:
                result.failures += 1

        await self._remove_orphans(log, result)

        log.info(
            "Sweep finished",
            expired=result.expired,
            orphans=result.orphans,
            failures=result.failures,
        )
        return result

    async def _remove_orphans(
        self, log: structlog.stdlib.BoundLogger, result: SweepResult
    ):
        # content is listed before records: an upload always writes its record
        # first, so fresh content can never look orphaned
        try:
            blob_ids = await self.blob_repo.list_ids(log)
            record_ids = await self.metadata_repo.list_ids(log)
        except StorageUnavailable as e:
            log.error("Failed to list stored ids", exc_info=e)
            result.failures += 1
            return

        for blob_id in blob_ids - record_ids:
            try:
                await self.blob_repo.delete(log.bind(blob_id=blob_id), blob_id)
            except StorageUnavailable as e:
                log.error(
                    "Failed to delete orphaned content", blob_id=blob_id, exc_info=e
                )
                result.failures += 1
            else:
                result.orphans += 1
