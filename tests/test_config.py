"""Tests for TOML configuration and environment overrides."""

import pytest

from voicejournal.config import (
    CONFIG_FILENAME,
    JournalConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)

ENV_VARS = (
    "VOICEJOURNAL_STORE_PATH",
    "VOICEJOURNAL_AI_API_BASE_URL",
    "VOICEJOURNAL_AI_API_TOKEN",
    "VOICEJOURNAL_MAX_ATTEMPTS",
    "VOICEJOURNAL_REQUEST_TIMEOUT",
    "VOICEJOURNAL_WORKSPACE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadSave:
    def test_creates_default_config(self, tmp_path):
        config = load_or_create_config(tmp_path)

        assert (tmp_path / CONFIG_FILENAME).exists()
        assert config.backend.base_url == ""
        assert config.queue.max_attempts == 3
        assert config.workspaces.names == ["default"]
        assert config.workspaces.default == "default"

    def test_round_trip(self, tmp_path):
        config = JournalConfig(path=tmp_path)
        config.backend.base_url = "http://192.168.1.20:8787/ai"
        config.backend.timeout = 30.0
        config.queue.max_attempts = 5
        config.workspaces.names = ["professional", "personal"]
        config.workspaces.default = "personal"
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.backend.base_url == "http://192.168.1.20:8787/ai"
        assert loaded.backend.timeout == 30.0
        assert loaded.queue.max_attempts == 5
        assert loaded.workspaces.names == ["professional", "personal"]
        assert loaded.workspaces.default == "personal"
        assert loaded.created == config.created

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer than supported"):
            load_config(tmp_path)

    def test_queue_retry_settings(self, tmp_path):
        config = JournalConfig(path=tmp_path)
        assert config.queue.retry_backoff == 30
        assert config.queue.stale_claim_seconds == 600

        config.queue.retry_backoff = 5
        config.queue.stale_claim_seconds = 120
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.queue.retry_backoff == 5.0
        assert loaded.queue.stale_claim_seconds == 120.0

    def test_negative_retry_backoff(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[queue]\nretry_backoff = -1\n")
        with pytest.raises(ValueError, match="retry_backoff"):
            load_config(tmp_path)

    def test_invalid_max_attempts(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[queue]\nmax_attempts = 0\n")
        with pytest.raises(ValueError, match="max_attempts"):
            load_config(tmp_path)

    def test_default_workspace_must_be_known(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            '[workspaces]\nnames = ["professional"]\ndefault = "personal"\n'
        )
        with pytest.raises(ValueError, match="personal"):
            load_config(tmp_path)

    def test_make_router(self, tmp_path):
        config = JournalConfig(path=tmp_path)
        config.workspaces.names = ["professional", "personal"]
        config.workspaces.default = "personal"
        router = config.make_router()
        assert router.names == ("professional", "personal")
        assert router.active == "personal"
        router.close()


class TestEnvironment:
    def test_default_store_path(self, monkeypatch, tmp_path):
        assert get_default_store_path().name == ".voicejournal"
        monkeypatch.setenv("VOICEJOURNAL_STORE_PATH", str(tmp_path))
        assert get_default_store_path() == tmp_path

    def test_env_overrides_file(self, monkeypatch, tmp_path):
        config = JournalConfig(path=tmp_path)
        config.backend.base_url = "http://from-file:8787"
        config.workspaces.names = ["professional", "personal"]
        config.workspaces.default = "professional"
        save_config(config)

        monkeypatch.setenv("VOICEJOURNAL_AI_API_BASE_URL", "http://from-env:8787")
        monkeypatch.setenv("VOICEJOURNAL_AI_API_TOKEN", "secret")
        monkeypatch.setenv("VOICEJOURNAL_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("VOICEJOURNAL_REQUEST_TIMEOUT", "12.5")
        monkeypatch.setenv("VOICEJOURNAL_WORKSPACE", "personal")

        loaded = load_or_create_config(tmp_path)
        assert loaded.backend.base_url == "http://from-env:8787"
        assert loaded.backend.token == "secret"
        assert loaded.queue.max_attempts == 7
        assert loaded.backend.timeout == 12.5
        assert loaded.workspaces.default == "personal"

        # The file itself is untouched
        assert load_config(tmp_path).backend.base_url == "http://from-file:8787"

    def test_bad_env_values(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VOICEJOURNAL_MAX_ATTEMPTS", "lots")
        with pytest.raises(ValueError, match="VOICEJOURNAL_MAX_ATTEMPTS"):
            load_or_create_config(tmp_path)

        monkeypatch.setenv("VOICEJOURNAL_MAX_ATTEMPTS", "0")
        with pytest.raises(ValueError, match="max_attempts"):
            load_or_create_config(tmp_path)

    def test_unknown_env_workspace(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VOICEJOURNAL_WORKSPACE", "nowhere")
        with pytest.raises(ValueError, match="nowhere"):
            load_or_create_config(tmp_path)
