"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from rspawn.config.settings import (
    ClientConfig,
    ServerConfig,
    Settings,
    load_settings,
)


class TestSettings:
    """Test configuration models and loading."""

    def test_default_settings(self) -> None:
        """Default Settings should be valid."""
        settings = Settings()
        assert settings.client.chunk_size == 4096
        assert settings.server.backlog == 128
        assert settings.protocol.max_payload_length == 1 << 20
        assert settings.logging.level == "INFO"

    def test_server_config_defaults(self) -> None:
        """ServerConfig should have sensible defaults."""
        config = ServerConfig()
        assert config.host is None
        assert config.close_grace_period == 1.0
        assert config.linger_timeout == 1.0
        assert config.pid_file is None

    def test_chunk_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ClientConfig(chunk_size=0)

    def test_load_settings_missing_file(self, tmp_path: Path) -> None:
        """load_settings with missing file should return defaults."""
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.client.chunk_size == 4096

    def test_load_settings_from_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "rspawn.yaml"
        config_file.write_text(
            "client:\n"
            "  chunk_size: 1024\n"
            "server:\n"
            "  host: 127.0.0.1\n"
            "  close_grace_period: 0.5\n"
            "protocol:\n"
            "  max_argument_count: 16\n"
            "logging:\n"
            "  level: DEBUG\n"
        )
        settings = load_settings(config_file)
        assert settings.client.chunk_size == 1024
        assert settings.server.host == "127.0.0.1"
        assert settings.server.close_grace_period == 0.5
        assert settings.protocol.max_argument_count == 16
        assert settings.protocol.max_payload_length == 1 << 20
        assert settings.logging.level == "DEBUG"

    def test_empty_yaml_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_settings(config_file).server.backlog == 128

    def test_environment_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        config_file = tmp_path / "rspawn.yaml"
        config_file.write_text("server:\n  backlog: 16\n")
        monkeypatch.setenv("RSPAWN_SERVER__BACKLOG", "64")
        assert load_settings(config_file).server.backlog == 64

    def test_invalid_yaml_value_rejected(self, tmp_path: Path) -> None:
        config_file = tmp_path / "rspawn.yaml"
        config_file.write_text("server:\n  linger_timeout: -1\n")
        with pytest.raises(ValidationError):
            load_settings(config_file)

    def test_chunk_size_above_payload_limit_rejected(self) -> None:
        with pytest.raises(ValidationError, match="max_payload_length"):
            Settings(client={"chunk_size": 4096}, protocol={"max_payload_length": 1024})

    def test_chunk_size_above_payload_limit_in_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "rspawn.yaml"
        config_file.write_text("client:\n  chunk_size: 2097152\n")
        with pytest.raises(ValidationError):
            load_settings(config_file)
