"""
Centralized configuration management.

Supported sources, later ones win:
1) `env.example` (committed, safe defaults)
2) `env.local` (optional, MUST NOT be committed)
3) System environment variables
"""

import os
from pathlib import Path

from dotenv import dotenv_values
from loguru import logger

_TRUE_VALUES = {"true", "1", "yes", "on"}


class EnvironConfig:
    """
    Singleton view over the merged env files and process environment.

    Values are raw strings; the typed getters treat a missing or blank value as absent
    and fall back to the given default.
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._config: dict[str, str | None] = {}
            self._load_config()
            EnvironConfig._initialized = True

    def _load_config(self):
        root = Path(__file__).parent.parent.parent

        for name in ("env.example", "env.local"):
            path = root / name
            if path.exists():
                self._config.update(dotenv_values(path))
                logger.debug("Loaded environment variables from {}", path)

        self._config.update(os.environ)

    def reload(self):
        """Re-read env files and the environment (tests change os.environ)."""
        self._config.clear()
        self._load_config()

    def __getitem__(self, key: str) -> str:
        value = self._config.get(key)
        if value is None:
            raise KeyError(f"Configuration key '{key}' not found")
        return value

    def __contains__(self, key: str) -> bool:
        return key in self._config

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self._config.get(key)
        if value is None or not value.strip():
            return default
        return value.strip()

    def get_str(self, key: str, default: str) -> str:
        return self.get(key) or default

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key)
        return int(value) if value is not None else default

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key)
        return float(value) if value is not None else default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return value.lower() in _TRUE_VALUES

    def get_list(self, key: str, default: str = "") -> list[str]:
        """Split a comma separated value into stripped, non-empty items."""
        value = self.get(key) or default
        return [x.strip() for x in value.split(",") if x.strip()]


config = EnvironConfig()
