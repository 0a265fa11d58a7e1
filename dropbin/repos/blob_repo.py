import asyncio
import os
from typing import Optional

import aioboto3
import structlog
import types_aiobotocore_s3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError

from dropbin.exceptions import BlobExistsError
from dropbin.models.primitives import BlobId
from dropbin.repos.base_repo import Repo
from dropbin.utils.async_utils import Timer
from dropbin.utils.redis_utils import close_aioredis, get_aioredis
from dropbin.utils.secret_utils import get_secret

Value = bytes


class BlobRepo(Repo):
    """
    Write-once content store keyed by blob id.

    Deleting an absent blob is a no-op, and saving over an existing blob
    raises `BlobExistsError` instead of overwriting it.
    """

    store_name = "blob store"

    async def save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        timer = Timer()
        timer.start()
        await self._call(log, "save", self._save(log, blob_id, value))
        timer.end()
        log.info(
            "Saved blob",
            blob_id=blob_id,
            size_bytes=len(value),
            duration=timer.wall_time,
        )

    async def _save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        raise NotImplementedError

    async def retrieve(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> Optional[Value]:
        return await self._call(log, "retrieve", self._retrieve(log, blob_id))

    async def _retrieve(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> Optional[Value]:
        raise NotImplementedError

    async def exists(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> bool:
        return await self._call(log, "exists", self._exists(log, blob_id))

    async def _exists(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> bool:
        raise NotImplementedError

    async def delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        timer = Timer()
        timer.start()
        await self._call(log, "delete", self._delete(log, blob_id))
        timer.end()
        log.info(
            "Deleted blob",
            blob_id=blob_id,
            duration=timer.wall_time,
        )

    async def _delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        raise NotImplementedError

    async def list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        return await self._call(log, "list_ids", self._list_ids(log))

    async def _list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        raise NotImplementedError


class InMemoryBlobRepo(BlobRepo):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._store: dict[BlobId, Value] = {}

    async def _save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        if blob_id in self._store:
            raise BlobExistsError(f"Blob {blob_id} already exists")
        self._store[blob_id] = value

    async def _retrieve(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> Optional[Value]:
        return self._store.get(blob_id, None)

    async def _exists(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> bool:
        return blob_id in self._store

    async def _delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        self._store.pop(blob_id, None)

    async def _list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        return set(self._store)


class FilesystemBlobRepo(BlobRepo):
    def __init__(self, root_dir: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.root_dir = root_dir

    def _get_path(self, blob_id: BlobId) -> str:
        return os.path.join(self.root_dir, blob_id)

    async def on_startup(self, log: structlog.stdlib.BoundLogger):
        os.makedirs(self.root_dir, exist_ok=True)
        log.info("Upload directory ready", root_dir=self.root_dir)

    async def _save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        path = self._get_path(blob_id)
        try:
            # `x` refuses to open a file that is already there
            with open(path, "xb") as f:
                f.write(value)
        except FileExistsError as e:
            raise BlobExistsError(f"Blob {blob_id} already exists") from e
        except OSError:
            # don't leave a truncated file behind
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            raise

    async def _retrieve(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> Optional[Value]:
        try:
            with open(self._get_path(blob_id), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    async def _exists(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> bool:
        return os.path.exists(self._get_path(blob_id))

    async def _delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        try:
            os.remove(self._get_path(blob_id))
        except FileNotFoundError:
            pass

    async def _list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        if not os.path.isdir(self.root_dir):
            return set()
        return {
            entry.name
            for entry in os.scandir(self.root_dir)
            if entry.is_file() and not entry.name.startswith(".")
        }


class RedisBlobRepo(BlobRepo):
    storage_errors = BlobRepo.storage_errors + (RedisError,)
    retries_internally = True

    def __init__(self, *args, prefix: str = "blobs", **kwargs):
        super().__init__(*args, **kwargs)
        self.prefix = prefix
        self.redis = get_aioredis()

    def _get_key(self, blob_id: BlobId) -> str:
        return f"{self.prefix}:{blob_id}"

    async def close(self):
        await close_aioredis()

    async def _save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        tenacious_set = self._wrap_tenacity(log, ConnectionError, self.redis.set)
        created = await tenacious_set(self._get_key(blob_id), value, nx=True)
        if not created:
            raise BlobExistsError(f"Blob {blob_id} already exists")

    async def _retrieve(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> Optional[Value]:
        tenacious_get = self._wrap_tenacity(log, ConnectionError, self.redis.get)
        return await tenacious_get(self._get_key(blob_id))

    async def _exists(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> bool:
        tenacious_exists = self._wrap_tenacity(
            log, ConnectionError, self.redis.exists
        )
        return bool(await tenacious_exists(self._get_key(blob_id)))

    async def _delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        tenacious_delete = self._wrap_tenacity(
            log, ConnectionError, self.redis.delete
        )
        await tenacious_delete(self._get_key(blob_id))

    async def _list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        key_prefix = f"{self.prefix}:"

        async def _collect():
            ids = set()
            async for key in self.redis.scan_iter(match=f"{key_prefix}*"):
                if isinstance(key, bytes):
                    key = key.decode()
                ids.add(key[len(key_prefix) :])
            return ids

        return await asyncio.wait_for(_collect(), timeout=self.timeout)


class S3BlobRepo(BlobRepo):
    storage_errors = BlobRepo.storage_errors + (
        BotoCoreError,
        Boto3Error,
        ClientError,
    )
    retries_internally = True

    def __init__(
        self,
        *args,
        bucket_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        prefix: str = "blobs",
        **kwargs,
    ):
        super().__init__(*args, **kwargs)

        if bucket_name is None:
            bucket_name = os.environ["BUCKET_NAME"]

        if endpoint_url is None and "AWS_ENDPOINT_URL" in os.environ:
            endpoint_url = os.environ["AWS_ENDPOINT_URL"]

        if aws_access_key_id is None:
            aws_access_key_id = get_secret("AWS_ACCESS_KEY_ID")
            if aws_access_key_id is None:
                raise ValueError("AWS_ACCESS_KEY_ID not set")
        if aws_secret_access_key is None:
            aws_secret_access_key = get_secret("AWS_SECRET_ACCESS_KEY")
            if aws_secret_access_key is None:
                raise ValueError("AWS_SECRET_ACCESS_KEY not set")

        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.prefix = prefix

        self.aioboto3_session: None | aioboto3.Session = None

    async def on_startup(self, log: structlog.stdlib.BoundLogger):
        async with self._get_s3_resource() as s3:
            await self._call(
                log,
                "on_startup",
                self._wrap_tenacity(
                    log,
                    s3.meta.client.exceptions.ClientError,
                    self.__on_startup,
                )(s3),
            )
        log.info("Bucket ready", bucket_name=self.bucket_name)

    async def __on_startup(
        self,
        s3: types_aiobotocore_s3.S3ServiceResource,
    ):
        bucket = await s3.Bucket(self.bucket_name)

        # create bucket if it doesn't exist
        try:
            await bucket.create()
        except (
            s3.meta.client.exceptions.BucketAlreadyOwnedByYou,
            s3.meta.client.exceptions.BucketAlreadyExists,
        ):
            pass

    def _wrap_tenacity(self, log, exception, func):
        if isinstance(exception, tuple):
            exc_tuple = exception
        else:
            exc_tuple = (exception,)
        return super()._wrap_tenacity(
            log, exc_tuple + (BotoCoreError, Boto3Error), func
        )

    def _get_s3_resource(self) -> types_aiobotocore_s3.S3ServiceResource:
        if self.aioboto3_session is None:
            self.aioboto3_session = aioboto3.Session()
        return self.aioboto3_session.resource(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.aws_access_key_id,
            aws_secret_access_key=self.aws_secret_access_key,
        )

    def _get_s3_client(self) -> types_aiobotocore_s3.S3Client:
        if self.aioboto3_session is None:
            self.aioboto3_session = aioboto3.Session()
        return self.aioboto3_session.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.aws_access_key_id,
            aws_secret_access_key=self.aws_secret_access_key,
        )

    def _get_object_key(self, blob_id: BlobId) -> str:
        return f"{self.prefix}/{blob_id}"

    async def _save(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        # S3 has no portable create-only put; check first
        if await self._exists(log, blob_id):
            raise BlobExistsError(f"Blob {blob_id} already exists")
        async with self._get_s3_resource() as s3:
            await self._wrap_tenacity(
                log,
                s3.meta.client.exceptions.ClientError,
                self.__save,
            )(s3, blob_id, value)

    async def __save(
        self,
        s3: types_aiobotocore_s3.S3ServiceResource,
        blob_id: BlobId,
        value: Value,
    ) -> None:
        bucket = await s3.Bucket(self.bucket_name)
        await bucket.put_object(
            Key=self._get_object_key(blob_id),
            Body=value,
        )

    async def _retrieve(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> Optional[Value]:
        async with self._get_s3_resource() as s3:
            return await self._wrap_tenacity(
                log,
                s3.meta.client.exceptions.ClientError,
                self.__retrieve,
            )(s3, blob_id)

    async def __retrieve(
        self, s3: types_aiobotocore_s3.S3ServiceResource, blob_id: BlobId
    ) -> Optional[Value]:
        try:
            obj = await s3.Object(self.bucket_name, self._get_object_key(blob_id))
            obj_get = await obj.get()
            return await obj_get["Body"].read()
        except s3.meta.client.exceptions.NoSuchKey:
            return None

    async def _exists(
        self, log: structlog.stdlib.BoundLogger, blob_id: BlobId
    ) -> bool:
        async with self._get_s3_client() as s3_client:
            return await self._wrap_tenacity(
                log, s3_client.exceptions.ClientError, self.__exists
            )(s3_client, blob_id)

    async def __exists(
        self, s3_client: types_aiobotocore_s3.S3Client, blob_id: BlobId
    ) -> bool:
        try:
            await s3_client.head_object(
                Bucket=self.bucket_name, Key=self._get_object_key(blob_id)
            )
            return True
        except s3_client.exceptions.ClientError as e:
            if e.response["Error"]["Code"] == "404":
                return False
            else:
                raise

    async def _delete(
        self,
        log: structlog.stdlib.BoundLogger,
        blob_id: BlobId,
    ) -> None:
        # S3 deletes of missing keys succeed, which keeps this idempotent
        async with self._get_s3_resource() as s3:
            await self._wrap_tenacity(
                log, s3.meta.client.exceptions.ClientError, self.__delete
            )(s3, blob_id)

    async def __delete(
        self,
        s3: types_aiobotocore_s3.S3ServiceResource,
        blob_id: BlobId,
    ) -> None:
        obj = await s3.Object(self.bucket_name, self._get_object_key(blob_id))
        await obj.delete()

    async def _list_ids(self, log: structlog.stdlib.BoundLogger) -> set[BlobId]:
        async with self._get_s3_resource() as s3:
            return await self._wrap_tenacity(
                log, s3.meta.client.exceptions.ClientError, self.__list_ids
            )(s3)

    async def __list_ids(
        self, s3: types_aiobotocore_s3.S3ServiceResource
    ) -> set[BlobId]:
        key_prefix = f"{self.prefix}/"
        bucket = await s3.Bucket(self.bucket_name)
        return {
            obj.key[len(key_prefix) :]
            async for obj in bucket.objects.filter(Prefix=key_prefix)
        }
