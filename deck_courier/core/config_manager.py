import asyncio
from pathlib import Path
from typing import Dict, Iterable, Optional

import aiofiles

from deck_courier.core.logging_utils import get_module_logger


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads ``key = value`` config files with ``#`` comments."""

    # ------------------------------------------------------------------
    # Parsing

    @staticmethod
    def parse_config_lines(lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                logger.debug("Ignoring config line without '=': %s", line)
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]

            config[key] = value

        return config

    # ------------------------------------------------------------------
    # Reading

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Read a config file synchronously (startup, before the loop runs)."""
        if not config_path.exists():
            logger.debug("Config file %s not found, using defaults", config_path)
            return {}

        try:
            with open(config_path, 'r', encoding='utf-8') as fh:
                return self.parse_config_lines(fh)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use inside the event loop."""
        if not await asyncio.to_thread(config_path.exists):
            logger.debug("Config file %s not found, using defaults", config_path)
            return {}

        try:
            async with aiofiles.open(config_path, 'r', encoding='utf-8') as fh:
                lines = await fh.readlines()
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

        return self.parse_config_lines(lines)

    # ------------------------------------------------------------------
    # Typed accessors

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        return config[key].lower() in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        if key not in config:
            return default

        try:
            return int(config[key])
        except ValueError:
            logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default

        try:
            return float(config[key])
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_optional_float(
        self, config: Dict[str, str], key: str, default: Optional[float] = None
    ) -> Optional[float]:
        """Float accessor where an empty, ``none`` or non-positive value means unset."""
        if key not in config:
            return default

        raw = config[key].strip().lower()
        if raw in ('', 'none', 'off'):
            return None
        try:
            value = float(raw)
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %s", key, config[key], default)
            return default
        return value if value > 0 else None

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
