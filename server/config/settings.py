import os
from dataclasses import asdict, dataclass, fields
from typing import Dict

ENV_PREFIX = "COPILOT_"


@dataclass
class BaseConfig:
    DEBUG: bool = False
    TESTING: bool = False
    SECRET_KEY: str = "change-me"
    DATABASE_PATH: str = "storage/sqlite/copilot.db"
    CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    JWT_EXPIRE_HOURS: int = 2
    RATE_LIMIT_PER_MINUTE: int = 30
    RATE_LIMIT_FAILED_PER_HOUR: int = 50


@dataclass
class DevelopmentConfig(BaseConfig):
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"


@dataclass
class TestingConfig(BaseConfig):
    TESTING: bool = True
    # Empty keeps whatever path storage.sqlite.database already points at.
    DATABASE_PATH: str = ""
    LOG_LEVEL: str = "WARNING"


CONFIG_MAP = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": BaseConfig
}


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    return raw


def load_config(name: str) -> Dict[str, object]:
    """Build the config for ``name``; ``COPILOT_<KEY>`` environment variables override fields."""
    config_class = CONFIG_MAP.get(name, BaseConfig)
    config = config_class()
    for item in fields(config):
        raw = os.getenv(f"{ENV_PREFIX}{item.name}")
        if raw is not None:
            setattr(config, item.name, _coerce(raw, getattr(config, item.name)))
    return asdict(config)
