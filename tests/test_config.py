"""Tests for configuration loading."""

from pathlib import Path

import pytest

from taskvoiced.config import AppConfig, load_config
from taskvoiced.models import ModelSize


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("USE_OLLAMA", "OLLAMA_URL", "OLLAMA_MODEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "missing.toml")
    assert config.whisper.model == ModelSize.BASE
    assert config.whisper.language == "en"
    assert config.audio.min_duration_s == 0.3
    assert config.audio.min_peak == 0.01
    assert config.smart_parser.enabled is False


def test_load_from_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[audio]
device = "USB"

[whisper]
model = "Small"
language = ""

[smart_parser]
enabled = true
model = "mistral"

[daemon]
log_level = "debug"
database_path = "/tmp/tasks.db"
"""
    )

    config = load_config(path)

    assert config.audio.device == "USB"
    assert config.whisper.model == ModelSize.SMALL
    assert config.whisper.language is None
    assert config.smart_parser.enabled is True
    assert config.smart_parser.model == "mistral"
    assert config.daemon.log_level == "DEBUG"
    assert config.daemon.computed_database_path == Path("/tmp/tasks.db")


def test_default_data_paths(tmp_path):
    config = AppConfig()
    assert config.daemon.computed_models_dir == tmp_path / "data" / "taskvoice" / "models"
    assert config.daemon.computed_database_path == tmp_path / "data" / "taskvoice" / "tasks.db"


def test_invalid_model_name(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[whisper]\nmodel = "gigantic"\n')
    with pytest.raises(ValueError, match="validation failed"):
        load_config(path)


def test_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[whisper\n")
    with pytest.raises(ValueError, match="decoding TOML"):
        load_config(path)


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("USE_OLLAMA", "true")
    monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434")
    monkeypatch.setenv("OLLAMA_MODEL", "qwen2.5")

    config = load_config(tmp_path / "missing.toml")

    assert config.smart_parser.enabled is True
    assert config.smart_parser.base_url == "http://gpu-box:11434"
    assert config.smart_parser.model == "qwen2.5"


def test_env_can_disable_parser(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text("[smart_parser]\nenabled = true\n")
    monkeypatch.setenv("USE_OLLAMA", "0")
    assert load_config(path).smart_parser.enabled is False
