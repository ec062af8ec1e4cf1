import logging
from pathlib import Path

import pytest

from whisprlocal.config import Config


def test_defaults_when_sections_omitted(tmp_path):
    config = Config.from_dict({}, tmp_path)

    assert config.server.history_size == 10
    assert config.server.copy_to_clipboard is False
    assert config.downloads.max_redirects == 5
    assert config.audio.buffer_capacity == 1_920_000
    assert config.transcription.prompt is None
    assert config.get_socket_path() == tmp_path / "whisprlocal.sock"


def test_load_from_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "server:\n"
        "  history_size: 3\n"
        "  discard_phrases: ['Thank you.']\n"
        "  copy_to_clipboard: true\n"
        "storage:\n"
        "  models_dir: models\n"
        "  state_file: /var/lib/whisprlocal/state.yml\n"
        "audio:\n"
        "  max_buffer_seconds: 2\n"
        "transcription:\n"
        "  language: en\n"
        "  prompt: 'Kubernetes, kubectl'\n"
    )

    config = Config.load(path)

    assert config.server.history_size == 3
    assert config.server.discard_phrases == ["Thank you."]
    assert config.server.copy_to_clipboard is True
    assert config.get_models_dir() == tmp_path / "models"
    assert config.get_state_file() == Path("/var/lib/whisprlocal/state.yml")
    assert config.audio.buffer_capacity == 32000
    assert config.transcription.language == "en"
    assert config.transcription.prompt == "Kubernetes, kubectl"


def test_home_is_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))

    config = Config.from_dict({"storage": {"models_dir": "~/models"}}, Path("/etc"))

    assert config.get_models_dir() == tmp_path / "models"


def test_unknown_keys_are_ignored_with_warning(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        config = Config.from_dict({"downloads": {"max_redirects": 1, "mirror": "x"}}, tmp_path)

    assert config.downloads.max_redirects == 1
    assert "mirror" in caplog.text


def test_missing_config_exits(tmp_path):
    with pytest.raises(SystemExit):
        Config.load(tmp_path / "nope.yml")


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("")

    assert Config.load(path).server.socket_path == "whisprlocal.sock"
