import logging
from unittest.mock import Mock, patch

import pytest

from dropbin.log_config import QUIET_LOGGERS, configure_logging
from dropbin.utils.async_utils import Timer
from dropbin.utils.redis_utils import load_aioredis
from dropbin.utils.secret_utils import get_secret
from dropbin.utils.sniff_utils import UNKNOWN_CONTENT_TYPE, classify


@pytest.fixture(scope="function")
def mock_time():
    mock_time = Mock()
    mock_time.monotonic.side_effect = lambda: mock_time.monotonic.call_count
    with patch("dropbin.utils.async_utils.time", mock_time):
        yield


def test_timer(mock_time):
    timer = Timer()
    timer.start()
    timer.end()
    assert timer.wall_time == 1


def test_timer_context_manager(mock_time):
    with Timer() as timer:
        pass
    assert timer.wall_time == 1


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"\x89PNG\r\n\x1a\n" + b"\x00" * 16, "image/png"),
        (b"%PDF-1.7\n" + b"\x00" * 16, "application/pdf"),
        (b"\xff\xd8\xff\xe0" + b"\x00" * 16, "image/jpeg"),
        (b"hello", UNKNOWN_CONTENT_TYPE),
        (b"", UNKNOWN_CONTENT_TYPE),
    ],
)
def test_classify(data, expected):
    assert classify(data) == expected


def test_get_secret_from_env(monkeypatch):
    monkeypatch.setenv("DROPBIN_TEST_SECRET", "from-env")
    assert get_secret("dropbin_test_secret") == "from-env"


def test_get_secret_default(monkeypatch):
    monkeypatch.delenv("DROPBIN_TEST_SECRET", raising=False)
    assert get_secret("DROPBIN_TEST_SECRET") is None
    assert get_secret("DROPBIN_TEST_SECRET", "fallback") == "fallback"


def test_load_aioredis_requires_host(monkeypatch):
    monkeypatch.delenv("REDIS_HOST", raising=False)
    with patch("dropbin.utils.redis_utils.get_secret", return_value=None):
        with pytest.raises(ValueError):
            load_aioredis()


@pytest.mark.parametrize("level", [logging.DEBUG, logging.WARNING])
def test_configure_logging_quiets_storage_clients(level):
    # leave the session's structlog setup alone
    with patch("structlog.configure"), patch("logging.basicConfig"):
        configure_logging(level=level)
    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == max(level, logging.INFO)
