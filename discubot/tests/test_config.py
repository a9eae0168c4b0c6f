"""Tests for config loading, env overrides and secret handling."""

import json
import os
from unittest.mock import patch


class TestDefaults:
    def test_section_defaults(self):
        from discubot.common.config import DiscubotConfig
        cfg = DiscubotConfig()
        assert cfg.server.port == 8080
        assert cfg.server.resend_fetch_delay == 2.0
        assert cfg.llm.provider == "anthropic"
        assert cfg.analysis.cache_ttl_seconds == 3600.0
        assert cfg.analysis.max_attempts == 3
        assert cfg.analysis.max_tasks == 5
        assert cfg.notion.notion_version == "2022-06-28"
        assert cfg.notion.min_interval == 0.2

    def test_missing_file_gives_defaults(self, tmp_path):
        from discubot.common.config import load_config
        with patch("discubot.common.config.CONFIG_PATH", tmp_path / "missing.json"), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()
        assert cfg.server.host == "0.0.0.0"
        assert cfg.llm.anthropic_api_key == ""


class TestLoadConfig:
    def test_sections_read_from_file(self, tmp_path):
        from discubot.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "server": {"port": 9000, "slack_signing_secret": "file-secret"},
            "llm": {"provider": "openai", "openai_api_key": "sk-file", "openai_model": "gpt-4o"},
            "analysis": {"cache_ttl_seconds": 60, "max_tasks": 3},
            "notion": {"min_interval": 0.5},
        }))

        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.server.port == 9000
        assert cfg.server.slack_signing_secret == "file-secret"
        assert cfg.llm.provider == "openai"
        assert cfg.llm.openai_model == "gpt-4o"
        assert cfg.analysis.cache_ttl_seconds == 60
        assert cfg.analysis.max_tasks == 3
        assert cfg.notion.min_interval == 0.5

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        from discubot.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.server.port == 8080

    def test_env_overrides_file(self, tmp_path):
        from discubot.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"server": {"port": 9000}, "analysis": {"max_tasks": 3}}))

        env = {
            "DISCUBOT_PORT": "9100",
            "DISCUBOT_MAX_TASKS": "7",
            "NOTION_MIN_INTERVAL": "0.3",
            "RESEND_FETCH_DELAY": "0",
            "DISCUBOT_LLM_PROVIDER": "openai",
        }
        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.server.port == 9100
        assert cfg.analysis.max_tasks == 7
        assert cfg.notion.min_interval == 0.3
        assert cfg.server.resend_fetch_delay == 0.0
        assert cfg.llm.provider == "openai"

    def test_env_secrets_are_tracked(self, tmp_path):
        from discubot.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {"ANTHROPIC_API_KEY": "sk-ant-env", "SLACK_SIGNING_SECRET": "env-secret"}
        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.llm.anthropic_api_key == "sk-ant-env"
        assert cfg.server.slack_signing_secret == "env-secret"
        assert {"anthropic_api_key", "slack_signing_secret"} <= cfg._env_sourced_keys


class TestSaveConfig:
    def test_save_config_omits_env_secrets(self, tmp_path):
        from discubot.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"server": {"mailgun_signing_key": "file-key"}}))

        env = {"ANTHROPIC_API_KEY": "sk-ant-env"}
        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch("discubot.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["anthropic_api_key"] == ""
        assert saved["server"]["mailgun_signing_key"] == "file-key"

    def test_save_config_sets_owner_only_permissions(self, tmp_path):
        from discubot.common.config import DiscubotConfig, save_config
        config_file = tmp_path / "config.json"

        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch("discubot.common.config.CONFIG_DIR", tmp_path):
            save_config(DiscubotConfig())

        assert config_file.stat().st_mode & 0o777 == 0o600

    def test_round_trip(self, tmp_path):
        from discubot.common.config import DiscubotConfig, load_config, save_config
        config_file = tmp_path / "config.json"
        cfg = DiscubotConfig()
        cfg.analysis.max_tasks = 2
        cfg.notion.timeout = 12.0

        with patch("discubot.common.config.CONFIG_PATH", config_file), \
             patch("discubot.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, {}, clear=True):
            save_config(cfg)
            loaded = load_config()

        assert loaded.analysis.max_tasks == 2
        assert loaded.notion.timeout == 12.0
