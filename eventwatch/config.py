"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/eventwatch.db"


@dataclass
class ProvidersConfig:
    """Market data, news and social provider settings."""

    finnhub_api_key: str = ""
    finnhub_api_url: str = "https://finnhub.io/api/v1"
    reddit_client_id: str = ""
    reddit_client_secret: str = ""
    reddit_user_agent: str = "EventWatch/1.0"
    timeout_seconds: float = 10.0
    requests_per_second: float = 2.0
    burst: int = 4


@dataclass
class NLGConfig:
    """Text generation service settings."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    timeout_seconds: float = 20.0


@dataclass
class SpeechConfig:
    """Speech synthesis and audio storage settings."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "tts-1"
    voice: str = "alloy"
    timeout_seconds: float = 30.0
    storage_dir: str = "data/voice-notes"
    public_base_url: Optional[str] = None


@dataclass
class TelegramChannelConfig:
    """Telegram bot settings."""

    bot_token: str = ""
    api_url: str = "https://api.telegram.org"


@dataclass
class DiscordChannelConfig:
    """Discord webhook settings."""

    mention_on_high: bool = True


@dataclass
class ChannelsConfig:
    """Delivery channel configuration."""

    telegram: TelegramChannelConfig = field(default_factory=TelegramChannelConfig)
    discord: DiscordChannelConfig = field(default_factory=DiscordChannelConfig)


@dataclass
class ScheduleConfig:
    """Poll scheduler configuration."""

    interval_minutes: float = 5
    initial_delay_seconds: float = 10
    max_workers: int = 4


@dataclass
class DetectionConfig:
    """Abnormality detection parameters."""

    volatility_window: int = 20
    default_volatility: float = 2.0
    volatility_floor: float = 0.5
    news_recent_hours: int = 6
    news_baseline_days: int = 7


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    suppression_window_hours: float = 24
    greeting_window_hours: float = 4
    max_detailed_events: int = 4
    min_pacing_seconds: float = 1.0
    max_pacing_seconds: float = 8.0
    pacing_seconds_per_char: float = 0.02


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    nlg: NLGConfig = field(default_factory=NLGConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    schedule = config_dict.get("schedule") or {}
    if float(schedule.get("interval_minutes", 5)) <= 0:
        raise ConfigValidationError("schedule.interval_minutes must be positive")
    if int(schedule.get("max_workers", 4)) < 1:
        raise ConfigValidationError("schedule.max_workers must be at least 1")

    advanced = config_dict.get("advanced") or {}
    if float(advanced.get("suppression_window_hours", 24)) <= 0:
        raise ConfigValidationError("advanced.suppression_window_hours must be positive")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    _validate_config(config_dict)

    channels_dict = config_dict.get("channels") or {}
    channels = ChannelsConfig(
        telegram=TelegramChannelConfig(**(channels_dict.get("telegram") or {})),
        discord=DiscordChannelConfig(**(channels_dict.get("discord") or {})),
    )

    return AppConfig(
        database=DatabaseConfig(**(config_dict.get("database") or {})),
        providers=ProvidersConfig(**(config_dict.get("providers") or {})),
        nlg=NLGConfig(**(config_dict.get("nlg") or {})),
        speech=SpeechConfig(**(config_dict.get("speech") or {})),
        channels=channels,
        schedule=ScheduleConfig(**(config_dict.get("schedule") or {})),
        detection=DetectionConfig(**(config_dict.get("detection") or {})),
        advanced=AdvancedConfig(**(config_dict.get("advanced") or {})),
    )
