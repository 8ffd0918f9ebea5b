import asyncio
from pathlib import Path
from typing import Dict, Iterable, Optional

import aiofiles

from .logging_utils import get_module_logger
from .paths import USER_CONFIG_OVERRIDE


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads ``key = value`` config files, layering a per-user override file."""

    def __init__(self, override_path: Optional[Path] = USER_CONFIG_OVERRIDE):
        self.logger = get_module_logger("ConfigManager")
        self.override_path = override_path

    # ------------------------------------------------------------------
    # Internal helpers

    def _parse_config_lines(self, lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

            config[key] = value

        return config

    def _load_override_sync(self, config_path: Path) -> Dict[str, str]:
        override_path = self.override_path
        if override_path is None or not override_path.exists():
            return {}
        if override_path.resolve() == config_path.resolve():
            return {}

        try:
            with open(override_path, 'r', encoding='utf-8') as fh:
                return self._parse_config_lines(fh)
        except OSError as exc:
            logger.warning("Failed to read override config %s: %s", override_path, exc)
            return {}

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Synchronous read. A missing file yields only the overrides."""
        config: Dict[str, str] = {}

        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                config = self._parse_config_lines(f)
        else:
            logger.debug("Config file %s not found, using defaults", config_path)

        overrides = self._load_override_sync(config_path)
        if overrides:
            config.update(overrides)

        return config

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        """Async version for use in async contexts."""
        config: Dict[str, str] = {}

        if await asyncio.to_thread(config_path.exists):
            lines: list[str] = []
            async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                async for line in f:
                    lines.append(line)
            config = self._parse_config_lines(lines)
        else:
            logger.debug("Config file %s not found, using defaults", config_path)

        overrides = await asyncio.to_thread(self._load_override_sync, config_path)
        if overrides:
            config.update(overrides)

        return config

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = config[key].lower()
        return value in ('true', '1', 'yes', 'on')

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
