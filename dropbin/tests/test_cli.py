import json
import os
from unittest.mock import patch

import pytest

from dropbin.cli import build_parser, main


@pytest.fixture(autouse=True)
def keep_test_logging():
    # the CLI reconfigures structlog, which would drop the capture processor
    with patch("dropbin.cli.configure_logging"):
        yield


@pytest.fixture
def config_file(temp_dir):
    path = os.path.join(temp_dir, "dropbin.yaml")
    with open(path, "w") as f:
        f.write(
            f"""
tokens: [t1]
sweep_on_startup: false
metadata:
  backend: sql
  database_url: sqlite:///{temp_dir}/dropbin.db
blobs:
  backend: filesystem
  upload_directory: {temp_dir}/upload
"""
        )
    return path


@pytest.fixture
def upload_file(temp_dir):
    path = os.path.join(temp_dir, "greet.txt")
    with open(path, "wb") as f:
        f.write(b"hello")
    return path


def put(capsys, config_file, upload_file, *extra) -> str:
    argv = ["--config", config_file, "put", upload_file, "--token", "t1", *extra]
    assert main(argv) == 0
    return capsys.readouterr().out.strip()


def test_put_get(capsys, config_file, upload_file, temp_dir):
    blob_id = put(capsys, config_file, upload_file, "--title", "greet.txt")
    assert len(blob_id) == 6

    output = os.path.join(temp_dir, "out.txt")
    assert main(["--config", config_file, "get", blob_id, "-o", output]) == 0
    with open(output, "rb") as f:
        assert f.read() == b"hello"


def test_list(capsys, config_file, upload_file):
    public_id = put(capsys, config_file, upload_file, "--title", "public")
    put(capsys, config_file, upload_file, "--unlisted")

    assert main(["--config", config_file, "list", "--token", "t1"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    summaries = [json.loads(line) for line in lines]
    assert [summary["id"] for summary in summaries] == [public_id]
    assert summaries[0]["title"] == "public"
    assert summaries[0]["size_bytes"] == 5


def test_sweep(capsys, config_file):
    assert main(["--config", config_file, "sweep"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result == {"expired": 0, "orphans": 0, "failures": 0}


def test_get_missing(capsys, config_file):
    assert main(["--config", config_file, "get", "zzzzzz"]) == 1
    assert "error:" in capsys.readouterr().err


def test_put_bad_token(capsys, config_file, upload_file):
    argv = ["--config", config_file, "put", upload_file, "--token", "nope"]
    assert main(argv) == 1
    assert "Token not valid" in capsys.readouterr().err


def test_put_invalid_ttl(capsys, config_file, upload_file):
    argv = ["--config", config_file, "put", upload_file, "--token", "t1", "--ttl", "0"]
    assert main(argv) == 1


def test_parser():
    args = build_parser().parse_args(
        ["--json-logs", "put", "f.txt", "--token", "t", "--ttl", "1.5", "--unlisted"]
    )
    assert args.json_logs is True
    assert args.command == "put"
    assert args.ttl == 1.5
    assert args.unlisted is True
    assert args.title is None


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_put_get_with_default_backends(capsys, monkeypatch, temp_dir, upload_file):
    monkeypatch.chdir(temp_dir)
    with open("dropbin.yaml", "w") as f:
        f.write("tokens: [t1]\nsweep_on_startup: false\n")

    assert main(["--config", "dropbin.yaml", "put", upload_file, "--token", "t1"]) == 0
    blob_id = capsys.readouterr().out.strip()

    assert main(["--config", "dropbin.yaml", "get", blob_id, "-o", "out.txt"]) == 0
    with open("out.txt", "rb") as f:
        assert f.read() == b"hello"

    assert main(["--config", "dropbin.yaml", "sweep"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result == {"expired": 0, "orphans": 0, "failures": 0}
    assert os.listdir("upload") == [blob_id]


def test_no_token_source_is_reported(capsys, monkeypatch, temp_dir, upload_file):
    monkeypatch.chdir(temp_dir)
    monkeypatch.delenv("REDIS_HOST", raising=False)
    monkeypatch.setattr("dropbin.utils.redis_utils.aioredis_client", None)

    assert main(["put", upload_file, "--token", "t1"]) == 1
    assert "error: REDIS_HOST is not set" in capsys.readouterr().err


def test_invalid_config_is_reported(capsys, temp_dir):
    path = os.path.join(temp_dir, "bad.yaml")
    with open(path, "w") as f:
        f.write("default_ttl: 0\n")
    assert main(["--config", path, "sweep"]) == 1
    assert capsys.readouterr().err.startswith("error:")


def test_missing_config_is_reported(capsys, temp_dir):
    assert main(["--config", os.path.join(temp_dir, "nope.yaml"), "sweep"]) == 1
    assert "Could not find" in capsys.readouterr().err


def test_missing_upload_file_is_reported(capsys, config_file, temp_dir):
    missing = os.path.join(temp_dir, "nope")
    argv = ["--config", config_file, "put", missing, "--token", "t1"]
    assert main(argv) == 1
    assert "error:" in capsys.readouterr().err
