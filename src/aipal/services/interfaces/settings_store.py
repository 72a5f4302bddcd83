"""Abstract interface for the runtime key-value settings store."""

from abc import ABC, abstractmethod
from typing import Any, Dict


class ISettingsStore(ABC):
    """Holds user-adjustable settings such as the active agent and model."""

    @abstractmethod
    async def read_config(self) -> Dict[str, Any]:
        """Return all settings; an empty store reads as ``{}``."""
        pass

    @abstractmethod
    async def update_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``patch`` into the settings and return the result."""
        pass
