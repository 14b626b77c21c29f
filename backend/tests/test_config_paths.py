"""Tests for config file resolution and validation."""

import pytest
from pydantic import ValidationError

from teamchat.config import (
    AppConfig,
    ClientSettings,
    get_config,
    load_config,
    reset_config,
    set_config,
)


def test_settings_and_sibling_secrets_are_merged(tmp_path):
    """Secrets next to the settings file are picked up without an explicit path."""
    settings_file = tmp_path / "teamchat.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 6000\n"
        "client:\n"
        "  relay_url: ws://relay.internal:6000\n"
        "  max_reconnect_attempts: 3\n"
        "presence:\n"
        "  typing_idle_ms: 1500\n",
        encoding="utf-8",
    )
    (tmp_path / "teamchat.secrets.yaml").write_text(
        "jwt:\n"
        "  secret_key: from-file\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.server.port == 6000
    assert cfg.client.relay_url == "ws://relay.internal:6000"
    assert cfg.client.max_reconnect_attempts == 3
    assert cfg.presence.typing_idle_ms == 1500
    assert cfg.secrets.jwt.secret_key == "from-file"
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_defaults_when_sections_are_missing(tmp_path):
    """An empty settings file yields the documented defaults."""
    settings_file = tmp_path / "teamchat.settings.yaml"
    settings_file.write_text("", encoding="utf-8")

    cfg = load_config(settings_path=settings_file, secrets_path=tmp_path / "missing.yaml")
    assert cfg.client.connect_timeout_ms == 20000
    assert cfg.client.reconnect_delay_ms == 1000
    assert cfg.client.max_reconnect_delay_ms == 5000
    assert cfg.client.randomization_factor == 0.5
    assert cfg.client.max_reconnect_attempts == 0
    assert cfg.presence.typing_idle_ms == 1000
    assert cfg.history.page_size == 50
    assert cfg.history.max_messages_per_room == 5000


def test_explicit_secrets_path(tmp_path):
    settings_file = tmp_path / "teamchat.settings.yaml"
    settings_file.write_text("logging:\n  level: debug\n", encoding="utf-8")
    secrets_file = tmp_path / "elsewhere.yaml"
    secrets_file.write_text("jwt:\n  secret_key: explicit\n  algorithm: HS512\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file, secrets_path=secrets_file)
    assert cfg.logging.level == "debug"
    assert cfg.secrets.jwt.secret_key == "explicit"
    assert cfg.secrets.jwt.algorithm == "HS512"


def test_randomization_factor_is_validated():
    with pytest.raises(ValidationError):
        ClientSettings(randomization_factor=1.5)


def test_set_and_reset_config():
    custom = AppConfig()
    custom.server.port = 7001
    set_config(custom)
    assert get_config() is custom

    reset_config()
    set_config(AppConfig())
    assert get_config().server.port == 5000
