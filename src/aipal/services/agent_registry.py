"""Agent registry resolving configured agent names to adapters.

Resolution is total: unknown or empty names fall back to the default agent,
so the rest of the system never handles an "unknown agent" error.
"""

import logging
from typing import Dict, List, Mapping, Optional, Type

from aipal.models.agent_config import AgentConfig, AgentKind, OutputFormat
from aipal.services.base_agent_adapter import BaseAgentAdapter
from aipal.services.codex_adapter import CodexAdapter
from aipal.services.gemini_adapter import GeminiAdapter
from aipal.services.generic_adapter import GenericAdapter


logger = logging.getLogger(__name__)


DEFAULT_AGENT = "codex"

ADAPTER_CLASSES: Dict[str, Type[BaseAgentAdapter]] = {
    AgentKind.CODEX.value: CodexAdapter,
    AgentKind.GEMINI.value: GeminiAdapter,
    AgentKind.GENERIC.value: GenericAdapter,
}


def builtin_agent_configs() -> Dict[str, AgentConfig]:
    """Create the configurations of the built-in agents."""
    return {
        "codex": AgentConfig(
            agent_id="codex",
            kind=AgentKind.CODEX,
            label="codex",
            command="codex",
            args=["--json"],
            output_format=OutputFormat.CODEX_JSON,
            model_arg="--model",
        ),
        "gemini": AgentConfig(
            agent_id="gemini",
            kind=AgentKind.GEMINI,
            label="gemini",
            command="gemini",
            output_format=OutputFormat.JSON,
            model_arg="--model",
        ),
    }


class AgentRegistry:
    """Registry of agent adapters keyed by normalized agent id."""

    def __init__(
        self,
        agent_configs: Optional[Mapping[str, AgentConfig]] = None,
        default_agent: str = DEFAULT_AGENT
    ):
        self.logger = logging.getLogger(__name__)
        configs = builtin_agent_configs()
        for config in (agent_configs or {}).values():
            configs[config.agent_id] = config

        self._adapters: Dict[str, BaseAgentAdapter] = {
            agent_id: self._create_adapter(config) for agent_id, config in configs.items()
        }

        default_id = (default_agent or "").strip().lower()
        if default_id not in self._adapters:
            self.logger.warning(f"Default agent '{default_agent}' is not registered, using '{DEFAULT_AGENT}'")
            default_id = DEFAULT_AGENT
        self.default_agent = default_id

    @staticmethod
    def _create_adapter(config: AgentConfig) -> BaseAgentAdapter:
        adapter_class = ADAPTER_CLASSES.get(config.kind, GenericAdapter)
        return adapter_class(config)

    def normalize(self, name: Optional[str]) -> str:
        """Map a user-supplied agent name to a registered id."""
        if not name:
            return self.default_agent
        normalized = str(name).strip().lower()
        if normalized in self._adapters:
            return normalized
        return self.default_agent

    def is_known(self, name: Optional[str]) -> bool:
        if not name:
            return False
        return str(name).strip().lower() in self._adapters

    def get(self, name: Optional[str] = None) -> BaseAgentAdapter:
        return self._adapters[self.normalize(name)]

    def label(self, name: Optional[str] = None) -> str:
        return self.get(name).label

    def list_agents(self) -> List[str]:
        return sorted(self._adapters)
