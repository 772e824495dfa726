from pathlib import Path

import pytest

from modelfetch.exceptions import ConfigValidationError
from modelfetch.models import ModelFetchConfig, get_default_resource_dir


def test_defaults():
    config = ModelFetchConfig.from_dict({})

    assert config.max_concurrent == 2
    assert config.keep_partial_on_cancel is True
    assert config.network.connect_timeout == 30
    assert config.network.max_retries == 2
    assert config.base_url.startswith("https://")
    assert config.manifest is None


def test_sections_are_applied():
    config = ModelFetchConfig.from_dict(
        {
            "modelfetch": {
                "manifest": "models.json",
                "base_url": "https://mirror.example.com/models/",
                "max_concurrent": 4,
                "keep_partial_on_cancel": False,
                "progress_step": 5,
                "log_level": "debug",
                "log_file": "modelfetch.log",
            },
            "network": {
                "connect_timeout": 10,
                "read_timeout": 20.5,
                "user_agent": "HandyModelManager/1.0",
                "max_retries": 0,
            },
            "storage": {"resource_dir": "~/models"},
        }
    )

    assert config.manifest == "models.json"
    assert config.base_url == "https://mirror.example.com/models"
    assert config.max_concurrent == 4
    assert config.keep_partial_on_cancel is False
    assert config.progress_step == 5.0
    assert config.log_level == "DEBUG"
    assert config.log_file == "modelfetch.log"
    assert config.network.read_timeout == 20.5
    assert config.network.user_agent == "HandyModelManager/1.0"
    assert config.network.max_retries == 0
    assert config.storage.root == Path("~/models").expanduser()


@pytest.mark.parametrize(
    "data",
    [
        {"modelfetch": {"max_concurrent": 0}},
        {"modelfetch": {"max_concurrent": "2"}},
        {"modelfetch": {"base_url": "ftp://example.com"}},
        {"modelfetch": {"progress_step": 0}},
        {"modelfetch": {"progress_step": 150}},
        {"modelfetch": {"log_level": "LOUD"}},
        {"modelfetch": {"manifest": 42}},
        {"modelfetch": {"log_file": ""}},
        {"network": {"connect_timeout": -1}},
        {"network": {"read_timeout": "slow"}},
        {"network": {"max_retries": -1}},
        {"network": "fast"},
        {"storage": {"resource_dir": 7}},
    ],
)
def test_invalid_values_rejected(data):
    with pytest.raises(ConfigValidationError) as exc_info:
        ModelFetchConfig.from_dict(data)

    assert exc_info.value.code == "E102"


def test_resource_dir_env_override(monkeypatch, tmp_path):
    monkeypatch.setenv("MODELFETCH_HOME", str(tmp_path / "home"))

    assert get_default_resource_dir() == tmp_path / "home"
    assert ModelFetchConfig.from_dict({}).storage.root == tmp_path / "home"


def test_default_resource_dir_uses_xdg_cache(monkeypatch, tmp_path):
    monkeypatch.delenv("MODELFETCH_HOME", raising=False)
    monkeypatch.setattr("platform.system", lambda: "Linux")
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))

    assert get_default_resource_dir() == tmp_path / "cache" / "modelfetch"
