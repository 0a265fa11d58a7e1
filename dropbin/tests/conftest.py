import asyncio
import logging
import os
import random
from tempfile import TemporaryDirectory
from unittest import mock
from unittest.mock import MagicMock, patch

import pytest
import tenacity

from dropbin.log_config import configure_logging, get_logger
from dropbin.models.config import DropbinConfig
from dropbin.repos.blob_repo import (
    FilesystemBlobRepo,
    InMemoryBlobRepo,
    RedisBlobRepo,
    S3BlobRepo,
)
from dropbin.repos.metadata_repo import InMemoryMetadataRepo, SqlMetadataRepo
from dropbin.repos.token_repo import StaticTokenRepo
from dropbin.services.admission_service import AdmissionService
from dropbin.services.identifier_service import IdentifierService
from dropbin.services.lifecycle_service import LifecycleService

_log_history = []


def capture_processor(logger, method_name, event_dict):
    if method_name == "debug":
        return event_dict
    dict_copy = event_dict.copy()
    dict_copy["log_level"] = method_name
    _log_history.append(dict_copy)
    return event_dict


@pytest.fixture(scope="session", autouse=True)
def configure_logs():
    configure_logging(
        pretty=True, level=logging.DEBUG, additional_processors=[capture_processor]
    )


@pytest.fixture(scope="function")
def log_history():
    yield _log_history
    _log_history.clear()


@pytest.fixture(scope="function")
def log(log_history):
    return get_logger()


@pytest.fixture(scope="function")
def temp_dir():
    temp_dir = TemporaryDirectory()
    yield temp_dir.name
    temp_dir.cleanup()


@pytest.fixture(scope="session")
def mock_boto():
    from moto.server import ThreadedMotoServer

    server = ThreadedMotoServer(port=0)
    server.start()
    port = server._server.socket.getsockname()[1]  # type: ignore
    yield f"http://127.0.0.1:{port}"
    server.stop()


@pytest.fixture(scope="function")
async def blob_repo(request: pytest.FixtureRequest, temp_dir: str, log):
    repo_type = request.param
    if repo_type == S3BlobRepo:
        endpoint_url = request.getfixturevalue("mock_boto")
        blob_repo = repo_type(
            endpoint_url=endpoint_url,
            # a fresh bucket per test keeps orphan scans independent
            bucket_name=f"test-{random.getrandbits(32):08x}",
            aws_access_key_id="test",
            aws_secret_access_key="test",
        )
    elif repo_type == FilesystemBlobRepo:
        blob_repo = repo_type(os.path.join(temp_dir, "upload"))
    elif repo_type == RedisBlobRepo:
        blob_repo = repo_type(prefix=f"test-blobs-{random.getrandbits(32):08x}")
    else:
        blob_repo = repo_type()
    await blob_repo.on_startup(log)
    yield blob_repo
    if isinstance(blob_repo, RedisBlobRepo):
        for blob_id in await blob_repo.list_ids(log):
            await blob_repo.delete(log, blob_id)
    await blob_repo.close()


@pytest.fixture(scope="function")
def s3_blob_repo(blob_repo):
    # see pytest_generate_tests
    # this only lets through s3 parameterized blob repos
    return blob_repo


@pytest.fixture(scope="function")
async def metadata_repo(request: pytest.FixtureRequest, temp_dir: str, log):
    repo_type = request.param
    if repo_type == SqlMetadataRepo:
        repo = repo_type(f"sqlite:///{os.path.join(temp_dir, 'dropbin.db')}")
    else:
        repo = repo_type()
    await repo.on_startup(log)
    yield repo
    await repo.close()


@pytest.fixture
def in_memory_metadata_repo():
    return InMemoryMetadataRepo()


@pytest.fixture
def in_memory_blob_repo():
    return InMemoryBlobRepo()


@pytest.fixture
def tokens():
    return ["t1", "t2"]


@pytest.fixture
def config(tokens):
    return DropbinConfig(
        id_length=6,
        max_uploads_per_window=3,
        tokens=tokens,
        metadata={"backend": "memory"},
        blobs={"backend": "memory"},
    )


@pytest.fixture
def token_repo(tokens):
    return StaticTokenRepo(tokens)


@pytest.fixture
def identifier_service():
    return IdentifierService(random.Random(1234))


@pytest.fixture
def admission_service(config, metadata_repo, token_repo):
    return AdmissionService(
        config=config,
        metadata_repo=metadata_repo,
        token_repo=token_repo,
    )


@pytest.fixture
def lifecycle_service(
    config, metadata_repo, blob_repo, admission_service, identifier_service
):
    return LifecycleService(
        config=config,
        metadata_repo=metadata_repo,
        blob_repo=blob_repo,
        admission_service=admission_service,
        identifier_service=identifier_service,
    )


@pytest.fixture
def in_memory_lifecycle_service(
    config, in_memory_metadata_repo, in_memory_blob_repo, token_repo, identifier_service
):
    admission_service = AdmissionService(
        config=config,
        metadata_repo=in_memory_metadata_repo,
        token_repo=token_repo,
    )
    return LifecycleService(
        config=config,
        metadata_repo=in_memory_metadata_repo,
        blob_repo=in_memory_blob_repo,
        admission_service=admission_service,
        identifier_service=identifier_service,
    )


@pytest.fixture
def mock_wait_for():
    orig_wait_for = asyncio.wait_for

    def mock_wait_for(*args, timeout, **kwargs):
        return orig_wait_for(timeout=0.1, *args, **kwargs)

    with mock.patch("asyncio.wait_for", mock_wait_for):
        yield


@pytest.fixture
def mock_tenacity():
    original_retry = tenacity.retry

    def mock_tenacity(wait, **kwargs):
        return original_retry(
            wait=tenacity.wait_fixed(0),
            **kwargs,
        )

    with patch("tenacity.retry", mock_tenacity):
        yield


@pytest.fixture
def blocking_func():
    async def block(*args, **kwargs):
        await asyncio.sleep(1)
        return MagicMock()

    return block


@pytest.fixture
def assert_no_errors(log_history):
    yield
    assert all(log_line["log_level"] != "error" for log_line in log_history)


def pytest_generate_tests(metafunc):
    if "blob_repo" in metafunc.fixturenames:
        params = [
            pytest.param(
                S3BlobRepo,
                marks=[
                    pytest.mark.slow,
                ],
            ),
        ]
        # some tests only want s3
        if "s3_blob_repo" not in metafunc.fixturenames:
            params += [
                InMemoryBlobRepo,
                FilesystemBlobRepo,
                pytest.param(
                    RedisBlobRepo,
                    marks=pytest.mark.skipif(
                        "REDIS_HOST" not in os.environ or not os.environ["REDIS_HOST"],
                        reason="REDIS_HOST not set in the environment or empty",
                    ),
                ),
            ]
        metafunc.parametrize(
            "blob_repo",
            params,
            indirect=True,
        )
    if "metadata_repo" in metafunc.fixturenames:
        metafunc.parametrize(
            "metadata_repo",
            [InMemoryMetadataRepo, SqlMetadataRepo],
            indirect=True,
        )


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()

    if not item.config.getoption("--disallow-skip"):
        return
    if item.get_closest_marker("allow_skip"):
        return
    if rep.skipped:
        rep.outcome = "failed"
        r = call.excinfo._getreprcrash()
        rep.longrepr = f"Test should not have skipped: {r.path}:{r.lineno}: {r.message}"


def pytest_addoption(parser: pytest.Parser):
    parser.addoption(
        "--disallow-skip",
        action="store_true",
        default=False,
    )
