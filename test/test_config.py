"""
Test suite for the settings loader.

Tests cover:
- YAML config file loading
- Fallback order of options, config file and defaults
- Value validation
"""

import pytest

from zwbridge.Config import (
    DEFAULT_CONFIG,
    ConfigError,
    build_settings,
    get_int,
    get_str,
    load_config_file,
)


class TestConfigDefaults:
    """Tests for module constants."""

    def test_default_config(self):
        assert DEFAULT_CONFIG["mqtt_server"] == "localhost"
        assert DEFAULT_CONFIG["mqtt_port"] == 1883
        assert DEFAULT_CONFIG["mqtt_user"] is None
        assert DEFAULT_CONFIG["mqtt_password"] is None
        assert DEFAULT_CONFIG["qth_prefix"] == "sys/zwave/"
        assert DEFAULT_CONFIG["client_id"] == "qth_zwave"
        assert DEFAULT_CONFIG["zwave_server"] == "ws://localhost:3000"

    def test_defaults_when_nothing_given(self):
        assert build_settings({}, {}) == DEFAULT_CONFIG


class TestLoadConfigFile:
    """Tests for load_config_file."""

    def test_no_file(self):
        assert load_config_file(None) == {}
        assert load_config_file("") == {}

    def test_general_section_flattened(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text(
            "general:\n"
            "  - mqtt_server: broker.lan\n"
            "  - mqtt_port: 1884\n"
            "  - qth_prefix: home/zwave/\n",
            encoding="utf-8",
        )

        assert load_config_file(str(path)) == {
            "mqtt_server": "broker.lan",
            "mqtt_port": 1884,
            "qth_prefix": "home/zwave/",
        }

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config_file(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to open"):
            load_config_file(str(tmp_path / "missing.yaml"))

    def test_unparsable_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("general: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="Failed to parse"):
            load_config_file(str(path))

    def test_general_must_be_list_of_mappings(self, tmp_path):
        path = tmp_path / "flat.yaml"
        path.write_text("general:\n  mqtt_server: broker.lan\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="list of mappings"):
            load_config_file(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="mapping"):
            load_config_file(str(path))


class TestGetHelpers:
    """Tests for get_str and get_int."""

    def test_get_str(self):
        assert get_str(None, 5, "first", "second") == "first"
        assert get_str(None, 5) is None

    def test_get_int(self):
        assert get_int(None, "abc", "1884", 1883) == 1884
        assert get_int(None, 1885) == 1885
        assert get_int(True, 1883) == 1883
        assert get_int("x") is None


class TestBuildSettings:
    """Tests for build_settings."""

    def test_options_beat_file(self):
        settings = build_settings(
            {"mqtt_server": "cli.lan", "mqtt_port": None},
            {"mqtt_server": "file.lan", "mqtt_port": 1884},
        )

        assert settings["mqtt_server"] == "cli.lan"
        assert settings["mqtt_port"] == 1884

    def test_file_beats_defaults(self):
        settings = build_settings({}, {"zwave_server": "ws://zwave:3000", "mqtt_user": "bridge"})

        assert settings["zwave_server"] == "ws://zwave:3000"
        assert settings["mqtt_user"] == "bridge"
        assert settings["mqtt_password"] is None

    def test_prefix_gets_trailing_slash(self):
        assert build_settings({"qth_prefix": "home/zwave"}, {})["qth_prefix"] == "home/zwave/"

    def test_empty_prefix_kept(self):
        assert build_settings({"qth_prefix": ""}, {})["qth_prefix"] == ""

    def test_port_from_string(self):
        assert build_settings({}, {"mqtt_port": "1900"})["mqtt_port"] == 1900

    @pytest.mark.parametrize("port", ["abc", "18.5", 0, 70000])
    def test_invalid_port(self, port):
        with pytest.raises(ConfigError, match="mqtt_port"):
            build_settings({}, {"mqtt_port": port})

    def test_unrelated_options_ignored(self):
        settings = build_settings({"config": "bridge.yaml", "verbose": 2}, {})

        assert "config" not in settings
        assert "verbose" not in settings
