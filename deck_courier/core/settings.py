"""Typed runtime settings assembled from ``config.txt``."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from deck_courier.core.config_manager import ConfigManager, get_config_manager
from deck_courier.core.paths import CONFIG_PATH

DEFAULT_DEVICE_PORT = 9993
DEFAULT_FTP_PORT = 21
DEFAULT_CLIP_LIST_TIMEOUT = 15.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_WATCH_INTERVAL = 5.0


@dataclass
class DeckSettings:
    """Device, transfer and server settings with the reference defaults."""
    device_port: int = DEFAULT_DEVICE_PORT
    connect_timeout: Optional[float] = None
    clip_list_timeout: float = DEFAULT_CLIP_LIST_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL

    ftp_port: int = DEFAULT_FTP_PORT
    ftp_user: str = "anonymous"
    ftp_password: str = "anonymous"
    ftp_timeout: float = 30.0
    clip_extension: str = ".mp4"

    # None disables periodic re-listing; stop() still runs the final check
    watch_interval: Optional[float] = DEFAULT_WATCH_INTERVAL

    api_host: str = "127.0.0.1"
    api_port: int = 3001

    log_level: str = "info"
    log_file: Optional[Path] = None
    console_output: bool = True

    @classmethod
    def from_config(
        cls,
        config: Dict[str, str],
        config_manager: Optional[ConfigManager] = None,
    ) -> "DeckSettings":
        cm = config_manager or get_config_manager()
        defaults = cls()
        extension = cm.get_str(config, "clip_extension", defaults.clip_extension)
        if extension and not extension.startswith("."):
            extension = f".{extension}"
        log_file = cm.get_str(config, "log_file", "")
        return cls(
            device_port=cm.get_int(config, "device_port", defaults.device_port),
            connect_timeout=cm.get_optional_float(config, "connect_timeout", defaults.connect_timeout),
            clip_list_timeout=cm.get_float(config, "clip_list_timeout", defaults.clip_list_timeout),
            poll_interval=cm.get_float(config, "poll_interval", defaults.poll_interval),
            ftp_port=cm.get_int(config, "ftp_port", defaults.ftp_port),
            ftp_user=cm.get_str(config, "ftp_user", defaults.ftp_user),
            ftp_password=cm.get_str(config, "ftp_password", defaults.ftp_password),
            ftp_timeout=cm.get_float(config, "ftp_timeout", defaults.ftp_timeout),
            clip_extension=extension.lower(),
            watch_interval=cm.get_optional_float(config, "watch_interval", defaults.watch_interval),
            api_host=cm.get_str(config, "api_host", defaults.api_host),
            api_port=cm.get_int(config, "api_port", defaults.api_port),
            log_level=cm.get_str(config, "log_level", defaults.log_level),
            log_file=Path(log_file).expanduser() if log_file else None,
            console_output=cm.get_bool(config, "console_output", defaults.console_output),
        )


def load_settings(config_path: Path = CONFIG_PATH) -> DeckSettings:
    """Read ``config_path`` and build settings; missing keys keep defaults."""
    cm = get_config_manager()
    return DeckSettings.from_config(cm.read_config(config_path), cm)


async def load_settings_async(config_path: Path = CONFIG_PATH) -> DeckSettings:
    cm = get_config_manager()
    return DeckSettings.from_config(await cm.read_config_async(config_path), cm)


__all__ = ["DeckSettings", "load_settings", "load_settings_async"]
