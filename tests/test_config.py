"""
Tests for the configuration manager
====================================
"""

import yaml

from config import CONFIG_ENV_VAR, ConfigurationManager, get_config


def write_settings(path, data):
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return str(path)


class TestConfigurationManager:

    def test_packaged_defaults(self):
        assert get_config("queue.max_batch_size") == 10
        assert get_config("vision.retry.max_attempts") == 3
        assert get_config("missing.key", "fallback") == "fallback"

    def test_singleton(self):
        assert ConfigurationManager() is ConfigurationManager()

    def test_environment_override(self, tmp_path, monkeypatch):
        path = write_settings(tmp_path / "custom.yaml", {"cache": {"max_size": 7}})
        monkeypatch.setenv(CONFIG_ENV_VAR, path)
        ConfigurationManager.reset()

        assert get_config("cache.max_size") == 7
        # Custom files replace the packaged settings
        assert get_config("queue.max_batch_size") is None

    def test_relative_paths_are_resolved(self, tmp_path):
        path = write_settings(tmp_path / "custom.yaml", {"paths": {"logs": "logs"}})
        ConfigurationManager(path)

        assert get_config("paths.logs").endswith("logs")
        assert get_config("paths.logs") != "logs"

    def test_reload_picks_up_changes(self, tmp_path):
        path = tmp_path / "custom.yaml"
        write_settings(path, {"queue": {"max_batch_size": 2}})
        config = ConfigurationManager(str(path))

        write_settings(path, {"queue": {"max_batch_size": 4}})
        config.reload()

        assert get_config("queue.max_batch_size") == 4
        assert config.get_all() == {"queue": {"max_batch_size": 4}}
