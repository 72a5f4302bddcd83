"""Codex CLI agent adapter with exec mode integration."""

from typing import List

from aipal.lib.message_utils import shell_quote
from aipal.models.agent_config import AgentConfig, TurnState
from aipal.services.base_agent_adapter import BaseAgentAdapter


class CodexAdapter(BaseAgentAdapter):
    """Agent adapter for Codex CLI streaming JSON events.

    A fresh turn runs ``codex exec <args> <prompt>``; when a thread id is
    known the turn continues it with ``codex exec resume '<id>' ...``.
    """

    def __init__(self, agent_config: AgentConfig):
        super().__init__(agent_config)

    def build_command(self, prompt: str, state: TurnState) -> str:
        """Build Codex CLI command with appropriate options.

        Args:
            prompt: Final prompt text
            state: Turn state with the optional thread id

        Returns:
            Command line
        """
        command: List[str] = [self.config.command, "exec"]

        if state.thread_id:
            command.extend(["resume", shell_quote(state.thread_id)])

        command.extend(self.config.args)

        model = self.resolve_model(state)
        if model and self.config.model_arg:
            command.extend([self.config.model_arg, shell_quote(model)])

        thinking = self.resolve_thinking(state)
        if thinking and self.config.thinking_arg:
            command.extend([self.config.thinking_arg, shell_quote(thinking)])

        command.append(self.resolve_prompt(prompt, state))

        return self._environment_prefix() + " ".join(command)
