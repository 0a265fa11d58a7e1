from pathlib import Path

from dropbin.log_config import get_logger
from dropbin.models.config import DropbinConfig
from dropbin.models.primitives import BlobId, Timestamp, Token
from dropbin.models.record import BlobSummary, Download, SweepResult, Visibility
from dropbin.repos.blob_repo import (
    BlobRepo,
    FilesystemBlobRepo,
    InMemoryBlobRepo,
    RedisBlobRepo,
    S3BlobRepo,
)
from dropbin.repos.metadata_repo import (
    InMemoryMetadataRepo,
    MetadataRepo,
    SqlMetadataRepo,
)
from dropbin.repos.token_repo import (
    AllowAllTokenRepo,
    RedisTokenRepo,
    StaticTokenRepo,
    TokenRepo,
)
from dropbin.services.admission_service import TTL, AdmissionService
from dropbin.services.identifier_service import IdentifierService
from dropbin.services.lifecycle_service import LifecycleService
from dropbin.services.sweep_service import SweepService
from dropbin.utils.loader_utils import load_config_file, load_config_text


class Dropbin:
    def __init__(
        self,
        config: DropbinConfig,
        metadata_repo: None | MetadataRepo | type[MetadataRepo] = None,
        blob_repo: None | BlobRepo | type[BlobRepo] = None,
        token_repo: None | TokenRepo | type[TokenRepo] = None,
        identifier_service: None | IdentifierService = None,
    ):
        """
        Repos may be given as instances, or as classes that are built with the
        arguments the config holds for them (database url, upload directory,
        tokens). Left out, they are chosen by the config.
        """
        self.log = get_logger()
        self.config = config

        if isinstance(metadata_repo, MetadataRepo):
            self.metadata_repo = metadata_repo
        else:
            self.metadata_repo = self._metadata_repo_from_config(config, metadata_repo)

        if isinstance(blob_repo, BlobRepo):
            self.blob_repo = blob_repo
        else:
            self.blob_repo = self._blob_repo_from_config(config, blob_repo)

        if isinstance(token_repo, TokenRepo):
            self.token_repo = token_repo
        else:
            self.token_repo = self._token_repo_from_config(config, token_repo)

        self.admission_service = AdmissionService(
            config=config,
            metadata_repo=self.metadata_repo,
            token_repo=self.token_repo,
        )
        self.lifecycle_service = LifecycleService(
            config=config,
            metadata_repo=self.metadata_repo,
            blob_repo=self.blob_repo,
            admission_service=self.admission_service,
            identifier_service=identifier_service,
        )
        self.sweep_service = SweepService(
            self.log,
            self.lifecycle_service,
            interval=config.sweep_interval,
            run_on_start=config.sweep_on_startup,
        )

    @staticmethod
    def _metadata_repo_from_config(
        config: DropbinConfig,
        repo_class: None | type[MetadataRepo] = None,
    ) -> MetadataRepo:
        timeout = config.storage_timeout
        if repo_class is None:
            if config.metadata.backend == "sql":
                repo_class = SqlMetadataRepo
            else:
                repo_class = InMemoryMetadataRepo

        if issubclass(repo_class, SqlMetadataRepo):
            if config.metadata.database_url is None:
                raise ValueError(
                    "`metadata.database_url` is required for the sql backend"
                )
            return repo_class(config.metadata.database_url, timeout=timeout)
        return repo_class(timeout=timeout)

    @staticmethod
    def _blob_repo_from_config(
        config: DropbinConfig,
        repo_class: None | type[BlobRepo] = None,
    ) -> BlobRepo:
        blobs = config.blobs
        timeout = config.storage_timeout
        if repo_class is None:
            repo_class = {
                "memory": InMemoryBlobRepo,
                "filesystem": FilesystemBlobRepo,
                "redis": RedisBlobRepo,
                "s3": S3BlobRepo,
            }[blobs.backend]

        if issubclass(repo_class, FilesystemBlobRepo):
            return repo_class(blobs.upload_directory, timeout=timeout)
        if issubclass(repo_class, RedisBlobRepo):
            return repo_class(timeout=timeout, prefix=blobs.prefix)
        if issubclass(repo_class, S3BlobRepo):
            return repo_class(
                timeout=timeout,
                bucket_name=blobs.bucket_name,
                endpoint_url=blobs.endpoint_url,
                prefix=blobs.prefix,
            )
        return repo_class(timeout=timeout)

    @staticmethod
    def _token_repo_from_config(
        config: DropbinConfig,
        repo_class: None | type[TokenRepo] = None,
    ) -> TokenRepo:
        timeout = config.storage_timeout
        if repo_class is None:
            if not config.check_token:
                repo_class = AllowAllTokenRepo
            elif config.tokens:
                repo_class = StaticTokenRepo
            else:
                repo_class = RedisTokenRepo

        if issubclass(repo_class, StaticTokenRepo):
            return repo_class(config.tokens, timeout=timeout)
        return repo_class(timeout=timeout)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "Dropbin":
        config = load_config_text(text)
        return Dropbin(config=config, **kwargs)

    @classmethod
    def from_file(cls, file: str | Path, **kwargs) -> "Dropbin":
        if isinstance(file, Path):
            file = file.as_posix()
        config = load_config_file(file)
        return Dropbin(config=config, **kwargs)

    async def start(self, sweep: bool = True):
        """
        Prepare the stores, then start the background sweeper.

        Parameters
        ----------
        sweep : bool
            set to False for one-shot use (e.g. a single CLI command)
        """
        await self.metadata_repo.on_startup(self.log)
        await self.blob_repo.on_startup(self.log)
        await self.token_repo.on_startup(self.log)
        if sweep:
            self.sweep_service.start()

    async def close(self):
        if self.sweep_service.task is not None:
            await self.sweep_service.stop()
        await self.metadata_repo.close()
        await self.blob_repo.close()
        await self.token_repo.close()

    async def __aenter__(self) -> "Dropbin":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def ingest(
        self,
        data: bytes,
        token: Token,
        title: str,
        ttl: TTL | None = None,
        visibility: Visibility = Visibility.PUBLIC,
        now: Timestamp | None = None,
    ) -> BlobId:
        """
        Store `data` on behalf of `token` and return the id it can be retrieved by.

        Parameters
        ----------
        ttl : None | int | float | timedelta
            seconds until the blob expires; `None` uses `default_ttl` from the config
        visibility : Visibility
            `UNLISTED` blobs are retrievable by id but left out of `list_public`
        now : None | float
            epoch seconds to treat as the current time (defaults to the wall clock)
        """
        return await self.lifecycle_service.ingest(
            self.log,
            data=data,
            token=token,
            title=title,
            ttl=ttl,
            visibility=visibility,
            now=now,
        )

    async def retrieve(self, blob_id: BlobId, now: Timestamp | None = None) -> Download:
        return await self.lifecycle_service.retrieve(self.log, blob_id, now=now)

    async def list_public(
        self, token: Token, now: Timestamp | None = None
    ) -> list[BlobSummary]:
        return await self.lifecycle_service.list_public(self.log, token, now=now)

    async def sweep(self, now: Timestamp | None = None) -> SweepResult:
        return await self.lifecycle_service.sweep(self.log, now=now)
