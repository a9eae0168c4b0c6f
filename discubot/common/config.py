"""
Configuration Management for Discubot

Loads configuration from ~/.discubot/config.json and environment variables.
Per-team source configs live separately in the sources file (see
``discubot.pipeline.stores``).
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field

# Default config paths
CONFIG_DIR = Path.home() / ".discubot"
CONFIG_PATH = CONFIG_DIR / "config.json"
SOURCES_PATH = CONFIG_DIR / "sources.json"
JOBS_PATH = CONFIG_DIR / "jobs.json"
IDENTITIES_PATH = CONFIG_DIR / "identities.json"


@dataclass
class ServerConfig:
    """Webhook server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    slack_signing_secret: str = ""
    mailgun_signing_key: str = ""
    resend_webhook_secret: str = ""
    notion_webhook_secret: str = ""
    resend_api_token: str = ""
    resend_fetch_delay: float = 2.0


@dataclass
class LLMConfig:
    """Language model provider configuration"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    max_tokens: int = 2048
    timeout: float = 60.0


@dataclass
class AnalysisConfig:
    """Analysis cache and retry configuration"""
    cache_ttl_seconds: float = 3600.0
    cache_max_entries: int = 500
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    max_tasks: int = 5


@dataclass
class NotionConfig:
    """Destination tracker configuration"""
    api_base: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"
    min_interval: float = 0.2  # seconds between page creations
    timeout: float = 30.0


@dataclass
class StorageConfig:
    """Record store locations"""
    sources_path: str = str(SOURCES_PATH)
    jobs_path: str = str(JOBS_PATH)
    identities_path: str = str(IDENTITIES_PATH)


@dataclass
class DiscubotConfig:
    """Main Discubot configuration"""
    server: ServerConfig = field(default_factory=ServerConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    notion: NotionConfig = field(default_factory=NotionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        host=server_data.get("host", "0.0.0.0"),
        port=server_data.get("port", 8080),
        log_level=server_data.get("log_level", "INFO"),
        slack_signing_secret=server_data.get("slack_signing_secret", ""),
        mailgun_signing_key=server_data.get("mailgun_signing_key", ""),
        resend_webhook_secret=server_data.get("resend_webhook_secret", ""),
        notion_webhook_secret=server_data.get("notion_webhook_secret", ""),
        resend_api_token=server_data.get("resend_api_token", ""),
        resend_fetch_delay=server_data.get("resend_fetch_delay", 2.0),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-5-20250929"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        max_tokens=llm_data.get("max_tokens", 2048),
        timeout=llm_data.get("timeout", 60.0),
    )


def _parse_analysis_config(data: dict) -> AnalysisConfig:
    """Parse analysis section from config dict"""
    analysis_data = data.get("analysis", {})
    return AnalysisConfig(
        cache_ttl_seconds=analysis_data.get("cache_ttl_seconds", 3600.0),
        cache_max_entries=analysis_data.get("cache_max_entries", 500),
        max_attempts=analysis_data.get("max_attempts", 3),
        base_delay=analysis_data.get("base_delay", 1.0),
        max_delay=analysis_data.get("max_delay", 10.0),
        max_tasks=analysis_data.get("max_tasks", 5),
    )


def _parse_notion_config(data: dict) -> NotionConfig:
    """Parse notion section from config dict"""
    notion_data = data.get("notion", {})
    return NotionConfig(
        api_base=notion_data.get("api_base", "https://api.notion.com/v1"),
        notion_version=notion_data.get("notion_version", "2022-06-28"),
        min_interval=notion_data.get("min_interval", 0.2),
        timeout=notion_data.get("timeout", 30.0),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = data.get("storage", {})
    return StorageConfig(
        sources_path=storage_data.get("sources_path", str(SOURCES_PATH)),
        jobs_path=storage_data.get("jobs_path", str(JOBS_PATH)),
        identities_path=storage_data.get("identities_path", str(IDENTITIES_PATH)),
    )


def load_config() -> DiscubotConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.discubot/config.json)
    3. Default values
    """
    config = DiscubotConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.server = _parse_server_config(data)
            config.llm = _parse_llm_config(data)
            config.analysis = _parse_analysis_config(data)
            config.notion = _parse_notion_config(data)
            config.storage = _parse_storage_config(data)
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    # Environment variable overrides
    if os.getenv("DISCUBOT_HOST"):
        config.server.host = os.getenv("DISCUBOT_HOST")
    if os.getenv("DISCUBOT_PORT"):
        config.server.port = int(os.getenv("DISCUBOT_PORT"))
    if os.getenv("DISCUBOT_LOG_LEVEL"):
        config.server.log_level = os.getenv("DISCUBOT_LOG_LEVEL")
    if os.getenv("RESEND_FETCH_DELAY"):
        config.server.resend_fetch_delay = float(os.getenv("RESEND_FETCH_DELAY"))

    if os.getenv("DISCUBOT_CACHE_TTL"):
        config.analysis.cache_ttl_seconds = float(os.getenv("DISCUBOT_CACHE_TTL"))
    if os.getenv("DISCUBOT_MAX_TASKS"):
        config.analysis.max_tasks = int(os.getenv("DISCUBOT_MAX_TASKS"))
    if os.getenv("NOTION_MIN_INTERVAL"):
        config.notion.min_interval = float(os.getenv("NOTION_MIN_INTERVAL"))

    if os.getenv("DISCUBOT_SOURCES_PATH"):
        config.storage.sources_path = os.getenv("DISCUBOT_SOURCES_PATH")
    if os.getenv("DISCUBOT_JOBS_PATH"):
        config.storage.jobs_path = os.getenv("DISCUBOT_JOBS_PATH")

    # Secrets: track env-sourced keys so save_config never persists them
    _env_secret_map = {
        "SLACK_SIGNING_SECRET": (config.server, "slack_signing_secret"),
        "MAILGUN_SIGNING_KEY": (config.server, "mailgun_signing_key"),
        "RESEND_WEBHOOK_SECRET": (config.server, "resend_webhook_secret"),
        "NOTION_WEBHOOK_SECRET": (config.server, "notion_webhook_secret"),
        "RESEND_API_TOKEN": (config.server, "resend_api_token"),
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
    }
    for env_var, (section, attr) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(attr)

    _env_llm_map = {
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_MODEL": "openai_model",
        "DISCUBOT_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)

    return config


def save_config(config: DiscubotConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    server_section = {
        "host": config.server.host,
        "port": config.server.port,
        "log_level": config.server.log_level,
        "slack_signing_secret": config.server.slack_signing_secret,
        "mailgun_signing_key": config.server.mailgun_signing_key,
        "resend_webhook_secret": config.server.resend_webhook_secret,
        "notion_webhook_secret": config.server.notion_webhook_secret,
        "resend_api_token": config.server.resend_api_token,
        "resend_fetch_delay": config.server.resend_fetch_delay,
    }
    llm_section = {
        "provider": config.llm.provider,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "max_tokens": config.llm.max_tokens,
        "timeout": config.llm.timeout,
    }
    for section in (server_section, llm_section):
        for key in section:
            if key in env_sourced:
                section[key] = ""

    data = {
        "server": server_section,
        "llm": llm_section,
        "analysis": {
            "cache_ttl_seconds": config.analysis.cache_ttl_seconds,
            "cache_max_entries": config.analysis.cache_max_entries,
            "max_attempts": config.analysis.max_attempts,
            "base_delay": config.analysis.base_delay,
            "max_delay": config.analysis.max_delay,
            "max_tasks": config.analysis.max_tasks,
        },
        "notion": {
            "api_base": config.notion.api_base,
            "notion_version": config.notion.notion_version,
            "min_interval": config.notion.min_interval,
            "timeout": config.notion.timeout,
        },
        "storage": {
            "sources_path": config.storage.sources_path,
            "jobs_path": config.storage.jobs_path,
            "identities_path": config.storage.identities_path,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
