from __future__ import annotations

from pathlib import Path

import pytest

from arai_relay.config import DEFAULT_SYSTEM_PROMPT, load_config, load_settings


def test_missing_file_gives_defaults(tmp_path: Path, clean_env):
    s = load_settings(str(tmp_path / "absent.yaml"))
    assert s.detector.api_key == "mysecret"
    assert s.detector.lease_seconds == 60.0
    assert s.detector.require_auth_on_latest is False
    assert s.upstream.model == "gpt-4o-mini"
    assert s.chat.heartbeat_seconds == 25.0
    assert s.chat.history_capacity == 10
    assert s.chat.system_prompt == DEFAULT_SYSTEM_PROMPT


def test_yaml_file_is_merged_over_defaults(tmp_path: Path, clean_env):
    path = tmp_path / "relay.yaml"
    path.write_text(
        "detector:\n  lease_seconds: 15\nchat:\n  include_history: true\n  system_prompt: Be brief.\n",
        encoding="utf-8",
    )
    s = load_settings(str(path))
    assert s.detector.lease_seconds == 15.0
    assert s.detector.api_key == "mysecret"
    assert s.chat.include_history is True
    assert s.chat.system_prompt == "Be brief."


def test_config_path_from_env(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "env.yaml"
    path.write_text("server:\n  port: 9000\n", encoding="utf-8")
    monkeypatch.setenv("ARAI_RELAY_CONFIG", str(path))
    assert load_settings().server.port == 9000


def test_env_overrides_and_secrets(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ARAI_RELAY__DETECTOR__LEASE_SECONDS", "5.5")
    monkeypatch.setenv("ARAI_RELAY__CHAT__USE_SERVER_HISTORY", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("OPENAI_MODEL", "gpt-env")
    monkeypatch.setenv("DETECTOR_KEY", "s3cret")
    s = load_settings(str(tmp_path / "absent.yaml"))
    assert s.detector.lease_seconds == 5.5
    assert s.chat.use_server_history is True
    assert s.upstream.api_key == "sk-env"
    assert s.upstream.model == "gpt-env"
    assert s.detector.api_key == "s3cret"


def test_invalid_yaml_shape_raises(tmp_path: Path, clean_env):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))


def test_shipped_default_config_loads(clean_env):
    root = Path(__file__).resolve().parent.parent
    s = load_settings(str(root / "config" / "default.yaml"))
    assert s.server.port == 5000
    assert s.upstream.base_url == "https://api.openai.com/v1"
