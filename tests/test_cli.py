import json

import pytest
from click.testing import CliRunner
from loguru import logger

from modelfetch.cli import main

from conftest import file_entry, payload, sha256

SMALL = payload(3000, seed=1)


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger.remove()


@pytest.fixture
def manifest_path(tmp_path):
    path = tmp_path / "models.json"
    path.write_text(
        json.dumps(
            {
                "models": [
                    file_entry("small", SMALL, name="Whisper Small"),
                    file_entry("medium", payload(4000, seed=2)),
                ]
            }
        )
    )
    return path


@pytest.fixture
def run(manifest_path, tmp_path):
    runner = CliRunner()
    resource_dir = tmp_path / "resources"

    def run(*args):
        return runner.invoke(
            main,
            ["--manifest", str(manifest_path), "--resource-dir", str(resource_dir), *args],
        )

    run.resource_dir = resource_dir
    return run


def test_list(run):
    result = run("list")

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert lines[0].startswith("small\tfile\t")
    assert "Whisper Small" in lines[0]
    assert lines[1].startswith("medium\tfile\t")


def test_status_json(run):
    result = run("status", "--json", "small")

    assert result.exit_code == 0, result.output
    states = json.loads(result.stdout)
    assert states == [
        {
            "model_id": "small",
            "phase": "not_downloaded",
            "bytes_downloaded": 0,
            "bytes_total": len(SMALL),
            "progress": 0.0,
            "error": None,
            "staging_path": None,
            "cancel_requested": False,
        }
    ]


def test_status_unknown_model(run):
    result = run("status", "huge")

    assert result.exit_code != 0
    assert "huge" in result.output


def test_installed_model_path_download_and_delete(run):
    models_dir = run.resource_dir / "models"
    models_dir.mkdir(parents=True)
    (models_dir / "small").write_bytes(SMALL)

    result = run("path", "small")
    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == str(models_dir / "small")

    # 已就绪的模型不会联网
    result = run("download", "small")
    assert result.exit_code == 0, result.output
    assert "small\tready" in result.stdout

    result = run("delete", "small")
    assert result.exit_code == 0, result.output
    assert not (models_dir / "small").exists()

    result = run("path", "small")
    assert result.exit_code != 0


def test_delete_without_files_fails(run):
    result = run("delete", "medium")

    assert result.exit_code != 0


def test_config_file_with_relative_manifest(manifest_path, tmp_path):
    config_path = tmp_path / "modelfetch.toml"
    config_path.write_text(
        "[modelfetch]\n"
        f'manifest = "{manifest_path.name}"\n'
        "max_concurrent = 1\n"
        "\n[storage]\n"
        f'resource_dir = "{(tmp_path / "res").as_posix()}"\n'
    )

    result = CliRunner().invoke(main, ["--config", str(config_path), "list"])

    assert result.exit_code == 0, result.output
    assert "small" in result.stdout


def test_invalid_config_file(tmp_path):
    config_path = tmp_path / "modelfetch.yaml"
    config_path.write_text("modelfetch:\n  max_concurrent: 0\n")

    result = CliRunner().invoke(main, ["--config", str(config_path), "list"])

    assert result.exit_code != 0
    assert "max_concurrent" in result.output


def test_describe(tmp_path):
    artifact = tmp_path / "ggml-small.bin"
    artifact.write_bytes(SMALL)

    result = CliRunner().invoke(main, ["describe", str(artifact), "--id", "small"])

    assert result.exit_code == 0, result.output
    entry = json.loads(result.stdout)
    assert entry["sha256"] == sha256(SMALL)
    assert entry["size_bytes"] == len(SMALL)
    assert entry["filename"] == "ggml-small.bin"


def test_log_file_option(run, tmp_path):
    log_file = tmp_path / "logs" / "modelfetch.log"

    result = run("--log-file", str(log_file), "status", "small")
    logger.remove()

    assert result.exit_code == 0, result.output
    assert log_file.exists()
