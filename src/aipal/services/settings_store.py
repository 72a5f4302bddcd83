"""JSON file backed settings store."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

import aiofiles
import aiofiles.os

from aipal.services.interfaces.settings_store import ISettingsStore


logger = logging.getLogger(__name__)


class JsonSettingsStore(ISettingsStore):
    """Stores settings as one JSON object in a file.

    A missing file reads as an empty mapping. Updates are shallow merges;
    a ``None`` value removes the key.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def read_config(self) -> Dict[str, Any]:
        try:
            async with aiofiles.open(self.path, 'r') as f:
                content = await f.read()
        except FileNotFoundError:
            return {}

        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable settings file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    async def update_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            current = await self.read_config()
            for key, value in patch.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            await self._write(current)
            return current

    async def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        async with aiofiles.open(tmp_path, 'w') as f:
            await f.write(json.dumps(data, indent=2, sort_keys=True))
        await aiofiles.os.replace(tmp_path, self.path)
