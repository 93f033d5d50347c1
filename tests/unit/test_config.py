"""
Unit tests for nostream.config module.

Tests defaults, TOML merging, environment overrides and saving.
"""

import tomllib

import pytest

from nostream.config import DEFAULT_CONFIG, Config
from nostream.errors import ConfigError, ErrorCode


@pytest.fixture
def config_path(temp_dir):
    return temp_dir / "config.toml"


class TestLoading:
    """Test configuration loading."""

    def test_defaults_without_file(self, config_path):
        config = Config(config_path)
        assert config.to_dict() == DEFAULT_CONFIG
        assert config.get("sync", "tag_salt") == "nostr-tools"

    def test_file_values_merged_over_defaults(self, config_path):
        config_path.write_text(
            '[publish]\ntimeout = 3.5\n\n[relays]\nurls = ["wss://only.example"]\n',
            encoding="utf-8",
        )
        config = Config(config_path)

        assert config.get("publish", "timeout") == 3.5
        assert config.get("publish", "cooldown") == DEFAULT_CONFIG["publish"]["cooldown"]
        assert config.get("relays", "urls") == ["wss://only.example"]

    def test_unknown_key_default(self, config_path):
        assert Config(config_path).get("sync", "missing", "fallback") == "fallback"
        assert Config(config_path).get("nope", "missing") is None

    def test_parse_error(self, config_path):
        config_path.write_text("[publish\ntimeout = ", encoding="utf-8")
        with pytest.raises(ConfigError) as exc_info:
            Config(config_path)
        assert exc_info.value.code == ErrorCode.E704_CONFIG_PARSE_ERROR

    def test_defaults_not_mutated(self, config_path):
        config = Config(config_path)
        config.get("relays", "urls").append("wss://mutated")
        config.set("sync", "lookback_days", 99)
        assert "wss://mutated" not in DEFAULT_CONFIG["relays"]["urls"]
        assert DEFAULT_CONFIG["sync"]["lookback_days"] != 99


class TestEnvironmentOverrides:
    """Test NOSTREAM_SECTION_KEY overrides."""

    def test_typed_overrides(self, config_path, monkeypatch):
        monkeypatch.setenv("NOSTREAM_PUBLISH_MAX_CONSECUTIVE_FAILURES", "9")
        monkeypatch.setenv("NOSTREAM_SUBSCRIPTIONS_TIMEOUT", "12.5")
        monkeypatch.setenv("NOSTREAM_LOGGING_FILE_LOGGING", "no")
        monkeypatch.setenv("NOSTREAM_LOGGING_LEVEL", "DEBUG")
        config = Config(config_path)

        assert config.get("publish", "max_consecutive_failures") == 9
        assert config.get("subscriptions", "timeout") == 12.5
        assert config.get("logging", "file_logging") is False
        assert config.get("logging", "level") == "DEBUG"

    def test_list_override(self, config_path, monkeypatch):
        monkeypatch.setenv("NOSTREAM_RELAYS_URLS", "wss://a.example, wss://b.example,")
        assert Config(config_path).get("relays", "urls") == ["wss://a.example", "wss://b.example"]

    def test_environment_beats_file(self, config_path, monkeypatch):
        config_path.write_text("[sync]\nlookback_days = 3\n", encoding="utf-8")
        monkeypatch.setenv("NOSTREAM_SYNC_LOOKBACK_DAYS", "4")
        assert Config(config_path).get("sync", "lookback_days") == 4

    def test_bad_value_keeps_original(self, config_path, monkeypatch):
        monkeypatch.setenv("NOSTREAM_SYNC_LOOKBACK_DAYS", "ten")
        assert Config(config_path).get("sync", "lookback_days") == DEFAULT_CONFIG["sync"]["lookback_days"]


class TestSaving:
    """Test writing configuration files."""

    def test_save_and_reload(self, config_path):
        config = Config(config_path)
        config.set("relays", "urls", ["wss://x.example", "wss://y.example"])
        config.set("sync", "tag_salt", 'quote " and \\ backslash')
        config.save()

        reloaded = Config(config_path)
        assert reloaded.get("relays", "urls") == ["wss://x.example", "wss://y.example"]
        assert reloaded.get("sync", "tag_salt") == 'quote " and \\ backslash'

    def test_create_example_is_valid_toml(self, temp_dir):
        path = temp_dir / "nested" / "example.toml"
        Config.create_example(path)

        with open(path, "rb") as f:
            data = tomllib.load(f)
        assert data == DEFAULT_CONFIG

    def test_data_dir_expanded(self, config_path, temp_dir):
        config = Config(config_path)
        config.set("storage", "data_dir", str(temp_dir / "data"))
        assert config.data_dir == temp_dir / "data"

        config.set("storage", "data_dir", "~/somewhere")
        assert "~" not in str(config.data_dir)

    def test_save_failure(self, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("x", encoding="utf-8")
        config = Config(blocker / "config.toml")
        with pytest.raises(ConfigError) as exc_info:
            config.save()
        assert exc_info.value.code == ErrorCode.E702_CONFIG_SAVE_FAILED
