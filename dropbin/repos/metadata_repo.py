import math
from typing import Any

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    String,
    Text,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from dropbin.exceptions import RecordExistsError
from dropbin.models.primitives import BlobId, Timestamp, Token
from dropbin.models.record import NO_EXPIRY, BlobRecord, Visibility
from dropbin.repos.base_repo import Repo
from dropbin.utils.db_utils import get_async_db_url


class MetadataRepo(Repo):
    """
    Keyed store of `BlobRecord`s.

    Every public method is a single atomic operation against the backend,
    bounded by `timeout`; backend failures surface as `StorageUnavailable`.
    """

    store_name = "metadata store"

    async def insert(
        self, log: structlog.stdlib.BoundLogger, record: BlobRecord
    ) -> None:
        await self._call(log, "insert", self._insert(record))

    async def _insert(self, record: BlobRecord) -> None:
        raise NotImplementedError

    async def get(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> BlobRecord | None:
        return await self._call(log, "get", self._get(blob_id))

    async def _get(self, blob_id: BlobId) -> BlobRecord | None:
        raise NotImplementedError

    async def exists(self, log: structlog.stdlib.BoundLogger, blob_id: BlobId) -> bool:
        return await self.get(log, blob_id) is not None

    async def delete(self, log: structlog.stdlib.BoundLogger, blob_id: BlobId) -> bool:
        """
        Remove a record; returns whether it was there. Absent ids are not an error.
        """
        return await self._call(log, "delete", self._delete(blob_id))

    async def _delete(self, blob_id: BlobId) -> bool:
        raise NotImplementedError

    async def delete_if_expired(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId, now: Timestamp
    ) -> bool:
        """
        Remove a record only if it is dead at `now` (`expires_at <= now`).

        Returns whether a record was removed. A live record under the same id,
        such as a fresh upload that reused it, is left alone.
        """
        return await self._call(
            log, "delete_if_expired", self._delete_if_expired(blob_id, now)
        )

    async def _delete_if_expired(self, blob_id: BlobId, now: Timestamp) -> bool:
        raise NotImplementedError

    async def increment_downloads(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> None:
        await self._call(log, "increment_downloads", self._increment_downloads(blob_id))

    async def _increment_downloads(self, blob_id: BlobId) -> None:
        raise NotImplementedError

    async def list_public(
        self, log: structlog.stdlib.BoundLogger, now: Timestamp
    ) -> list[BlobRecord]:
        return await self._call(log, "list_public", self._list_public(now))

    async def _list_public(self, now: Timestamp) -> list[BlobRecord]:
        raise NotImplementedError

    async def list_expired(
        self, log: structlog.stdlib.BoundLogger, now: Timestamp
    ) -> list[BlobId]:
        """
        Ids of records with `expires_at < now`.
        """
        return await self._call(log, "list_expired", self._list_expired(now))

    async def _list_expired(self, now: Timestamp) -> list[BlobId]:
        raise NotImplementedError

    async def list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        return await self._call(log, "list_ids", self._list_ids())

    async def _list_ids(self) -> set[BlobId]:
        raise NotImplementedError

    async def count_uploads(
        self,
        log: structlog.stdlib.BoundLogger,
        token: Token,
        since: Timestamp,
        now: Timestamp,
    ) -> int:
        """
        Count live records owned by `token` uploaded strictly after `since`.
        """
        return await self._call(
            log, "count_uploads", self._count_uploads(token, since, now)
        )

    async def _count_uploads(
        self, token: Token, since: Timestamp, now: Timestamp
    ) -> int:
        raise NotImplementedError


class InMemoryMetadataRepo(MetadataRepo):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._records: dict[BlobId, BlobRecord] = {}

    async def _insert(self, record: BlobRecord) -> None:
        if record.id in self._records:
            raise RecordExistsError(f"Record {record.id} already exists")
        self._records[record.id] = record.model_copy()

    async def _get(self, blob_id: BlobId) -> BlobRecord | None:
        record = self._records.get(blob_id)
        if record is None:
            return None
        return record.model_copy()

    async def _delete(self, blob_id: BlobId) -> bool:
        return self._records.pop(blob_id, None) is not None

    async def _delete_if_expired(self, blob_id: BlobId, now: Timestamp) -> bool:
        record = self._records.get(blob_id)
        if record is None or record.is_live(now):
            return False
        del self._records[blob_id]
        return True

    async def _increment_downloads(self, blob_id: BlobId) -> None:
        record = self._records.get(blob_id)
        if record is not None:
            record.download_count += 1

    async def _list_public(self, now: Timestamp) -> list[BlobRecord]:
        records = [
            record.model_copy()
            for record in self._records.values()
            if record.visibility == Visibility.PUBLIC and record.is_live(now)
        ]
        return sorted(records, key=lambda record: record.uploaded_at)

    async def _list_expired(self, now: Timestamp) -> list[BlobId]:
        return [
            blob_id
            for blob_id, record in self._records.items()
            if record.expires_at < now
        ]

    async def _list_ids(self) -> set[BlobId]:
        return set(self._records)

    async def _count_uploads(
        self, token: Token, since: Timestamp, now: Timestamp
    ) -> int:
        return sum(
            1
            for record in self._records.values()
            if record.owner_token == token
            and record.uploaded_at > since
            and record.is_live(now)
        )


Base = declarative_base()


class BlobRecordRow(Base):
    __tablename__ = "files"

    id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False)
    content_type = Column(String(255), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    uploaded_at = Column(Float, nullable=False, index=True)
    # NULL means the record never expires
    expires_at = Column(Float, nullable=True, index=True)
    owner_token = Column(String(255), nullable=False, index=True)
    download_count = Column(BigInteger, nullable=False, default=0)
    visibility = Column(String(16), nullable=False)

    def __repr__(self):
        return f"<BlobRecordRow(id={self.id}, title={self.title}, expires_at={self.expires_at})>"


def _to_row(record: BlobRecord) -> BlobRecordRow:
    return BlobRecordRow(
        id=record.id,
        title=record.title,
        content_type=record.content_type,
        size_bytes=record.size_bytes,
        uploaded_at=record.uploaded_at,
        expires_at=None if math.isinf(record.expires_at) else record.expires_at,
        owner_token=record.owner_token,
        download_count=record.download_count,
        visibility=record.visibility.value,
    )


def _to_record(row: Any) -> BlobRecord:
    return BlobRecord(
        id=row.id,
        title=row.title,
        content_type=row.content_type,
        size_bytes=row.size_bytes,
        uploaded_at=row.uploaded_at,
        expires_at=NO_EXPIRY if row.expires_at is None else row.expires_at,
        owner_token=row.owner_token,
        download_count=row.download_count,
        visibility=Visibility(row.visibility),
    )


def _is_live(now: Timestamp):
    return or_(BlobRecordRow.expires_at.is_(None), BlobRecordRow.expires_at > now)


class SqlMetadataRepo(MetadataRepo):
    storage_errors = MetadataRepo.storage_errors + (SQLAlchemyError,)

    def __init__(self, database_url: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.database_url = get_async_db_url(database_url)
        self.engine = create_async_engine(self.database_url)
        self.session_factory = async_sessionmaker(
            bind=self.engine, expire_on_commit=False
        )

    async def on_startup(self, log: structlog.stdlib.BoundLogger):
        # create the `files` table if it is missing
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info(
            "Metadata database ready",
            database_url=self.database_url.render_as_string(hide_password=True),
        )

    async def close(self):
        await self.engine.dispose()

    async def _insert(self, record: BlobRecord) -> None:
        async with self.session_factory() as session:
            session.add(_to_row(record))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise RecordExistsError(f"Record {record.id} already exists") from e

    async def _get(self, blob_id: BlobId) -> BlobRecord | None:
        async with self.session_factory() as session:
            row = await session.get(BlobRecordRow, blob_id)
            if row is None:
                return None
            return _to_record(row)

    async def _delete(self, blob_id: BlobId) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(BlobRecordRow).where(BlobRecordRow.id == blob_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def _delete_if_expired(self, blob_id: BlobId, now: Timestamp) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(BlobRecordRow).where(
                    BlobRecordRow.id == blob_id,
                    BlobRecordRow.expires_at.is_not(None),
                    BlobRecordRow.expires_at <= now,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def _increment_downloads(self, blob_id: BlobId) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(BlobRecordRow)
                .where(BlobRecordRow.id == blob_id)
                .values(download_count=BlobRecordRow.download_count + 1)
            )
            await session.commit()

    async def _list_public(self, now: Timestamp) -> list[BlobRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BlobRecordRow)
                .where(
                    BlobRecordRow.visibility == Visibility.PUBLIC.value,
                    _is_live(now),
                )
                .order_by(BlobRecordRow.uploaded_at)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def _list_expired(self, now: Timestamp) -> list[BlobId]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BlobRecordRow.id).where(
                    BlobRecordRow.expires_at.is_not(None),
                    BlobRecordRow.expires_at < now,
                )
            )
            return list(result.scalars().all())

    async def _list_ids(self) -> set[BlobId]:
        async with self.session_factory() as session:
            result = await session.execute(select(BlobRecordRow.id))
            return set(result.scalars().all())

    async def _count_uploads(
        self, token: Token, since: Timestamp, now: Timestamp
    ) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(BlobRecordRow)
                .where(
                    BlobRecordRow.owner_token == token,
                    BlobRecordRow.uploaded_at > since,
                    _is_live(now),
                )
            )
            return result.scalar_one()
