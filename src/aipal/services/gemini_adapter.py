"""Gemini CLI agent adapter (single JSON response per invocation)."""

import os
import re
from typing import List, Optional

from aipal.lib.message_utils import shell_quote
from aipal.models.agent_config import AgentConfig, TurnState
from aipal.services.base_agent_adapter import BaseAgentAdapter


GEMINI_OUTPUT_FORMAT = "json"
AUTO_APPROVE_FLAG = "--yolo"
AUTO_APPROVE_ENV = "GEMINI_YOLO"

# Session listings print one entry per line with the id in brackets.
SESSION_ID_RE = re.compile(r"\[([0-9a-fA-F][0-9a-fA-F-]{7,})\]")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


class GeminiAdapter(BaseAgentAdapter):
    """Agent adapter for the Gemini CLI."""

    def __init__(self, agent_config: AgentConfig):
        super().__init__(agent_config)

    @property
    def auto_approve(self) -> bool:
        return self.config.auto_approve or _env_flag(AUTO_APPROVE_ENV)

    def build_command(self, prompt: str, state: TurnState) -> str:
        command: List[str] = [
            self.config.command,
            "-p", self.resolve_prompt(prompt, state),
            "--output-format", GEMINI_OUTPUT_FORMAT,
        ]
        if self.auto_approve:
            command.append(AUTO_APPROVE_FLAG)
        if state.thread_id:
            command.extend(["--resume", shell_quote(state.thread_id)])

        model = self.resolve_model(state)
        if model and self.config.model_arg:
            command.extend([self.config.model_arg, shell_quote(model)])

        command.extend(self.config.args)
        return self._environment_prefix() + " ".join(command)

    def list_sessions_command(self) -> Optional[str]:
        return self._environment_prefix() + f"{self.config.command} --list-sessions"

    def parse_session_list(self, output: str) -> Optional[str]:
        """Return the last session id found in a listing.

        Listings are ordered oldest first, so the last match is the most
        recent session.
        """
        last = None
        for line in (output or "").splitlines():
            for match in SESSION_ID_RE.finditer(line):
                last = match.group(1)
        return last
