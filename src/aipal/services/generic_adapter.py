"""Template-driven adapter for arbitrary command-line agents."""

import re

from aipal.lib.message_utils import shell_quote
from aipal.models.agent_config import AgentConfig, TurnState
from aipal.services.base_agent_adapter import BaseAgentAdapter


# A placeholder, optionally preceded by the flag that introduces it
# (``--model {model}`` or ``--model={model}``).
PLACEHOLDER_RE = re.compile(
    r"(?P<flag>(?:^|[ \t]+)-{1,2}[A-Za-z0-9][\w-]*(?P<sep>[ \t]+|=))?\{(?P<name>prompt|model|thinking)\}"
)


class GenericAdapter(BaseAgentAdapter):
    """Adapter that fills ``{prompt}``, ``{model}`` and ``{thinking}`` in a template.

    Each knob is passed either through its placeholder or through its
    configured flag, never both; the choice is made per knob. An unset knob
    removes its placeholder together with the flag written right before it.
    """

    def __init__(self, agent_config: AgentConfig):
        super().__init__(agent_config)
        self.template = agent_config.template or f"{agent_config.command} {{prompt}}"

    def build_command(self, prompt: str, state: TurnState) -> str:
        values = {
            "prompt": self.resolve_prompt(prompt, state),
            "model": self.resolve_model(state),
            "thinking": self.resolve_thinking(state),
        }

        def substitute(match):
            name = match.group("name")
            flag = match.group("flag") or ""
            if name == "prompt":
                return flag + values["prompt"]
            if not values[name]:
                return ""
            return flag + shell_quote(values[name])

        # Single pass so user text can never be re-expanded.
        command = PLACEHOLDER_RE.sub(substitute, self.template).strip()

        for knob, flag in (("model", self.config.model_arg), ("thinking", self.config.thinking_arg)):
            if "{" + knob + "}" in self.template:
                continue
            if values[knob] and flag:
                command = f"{command} {flag} {shell_quote(values[knob])}"

        return self._environment_prefix() + command
