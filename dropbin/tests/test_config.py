import os

import pydantic
import pytest

from dropbin.models.config import DropbinConfig
from dropbin.scripts.generate_config_schema import build_config_schema
from dropbin.utils.loader_utils import load_config_file, load_config_text

RESOURCES = os.path.join(os.path.dirname(__file__), "resources")


def test_defaults():
    config = DropbinConfig()
    assert config.id_length == 6
    assert config.rate_limit_window == 3600
    assert config.max_uploads_per_window == 10
    assert config.default_ttl is None
    assert config.check_token is True
    assert config.tokens == []
    assert config.allowed_content_types is None
    assert config.metadata.backend == "sql"
    assert config.metadata.database_url == "sqlite:///dropbin.db"
    assert config.blobs.backend == "filesystem"
    assert config.blobs.upload_directory == "./upload"


def test_load_config_file():
    config = load_config_file(os.path.join(RESOURCES, "dropbin.yaml"))
    assert config.id_length == 8
    assert config.rate_limit_window == 600
    assert config.max_uploads_per_window == 5
    assert config.default_ttl == 3600
    assert config.sweep_on_startup is False
    assert config.tokens == ["t1", "t2"]
    assert config.allowed_content_types == ["image/png", "unknown"]
    assert config.blobs.backend == "memory"


def test_load_missing_file(temp_dir):
    with pytest.raises(FileNotFoundError):
        load_config_file(os.path.join(temp_dir, "nope.yaml"))


def test_unknown_keys_rejected():
    with pytest.raises(pydantic.ValidationError):
        load_config_file(os.path.join(RESOURCES, "bad_key.yaml"))


@pytest.mark.parametrize("text", ["", "# just a comment\n"])
def test_empty_document_is_defaults(text):
    assert load_config_text(text) == DropbinConfig()


@pytest.mark.parametrize(
    "text",
    [
        "id_length: 0",
        "rate_limit_window: 0",
        "max_uploads_per_window: -1",
        "storage_timeout: 0",
        "default_ttl: 0",
        "default_ttl: -5",
        "blobs:\n  backend: ftp",
        "metadata:\n  backend: mongo",
    ],
)
def test_invalid_values_rejected(text):
    with pytest.raises(pydantic.ValidationError):
        load_config_text(text)


def test_config_schema():
    schema = build_config_schema()
    assert schema["title"] == "DropbinConfig"
    assert "id_length" in schema["properties"]
    assert schema["additionalProperties"] is False
    assert "BlobsConfig" in schema["$defs"]
