"""Base agent adapter interface with common functionality."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from aipal.lib.message_utils import shell_quote
from aipal.models.agent_config import AgentConfig, OutputFormat, ParsedResult, TurnState


logger = logging.getLogger(__name__)


def parse_codex_json(raw: str) -> ParsedResult:
    """Parse newline-delimited JSON events, ignoring non-JSON noise lines.

    A thread/session start record carries the continuity id; completed
    message items carry the reply text (the last one wins).
    """
    thread_id = None
    text = None
    saw_json = False

    for line in (raw or "").splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict):
            continue
        saw_json = True

        record_type = record.get("type", "")
        if record_type == "thread.started" and record.get("thread_id"):
            thread_id = str(record["thread_id"])
        elif record_type in ("session.created", "session_configured") and record.get("session_id"):
            thread_id = str(record["session_id"])
        elif record_type == "item.completed":
            item = record.get("item") or {}
            if item.get("type") in ("agent_message", "message") and isinstance(item.get("text"), str):
                text = item["text"]

    return ParsedResult(text=(text or "").strip(), thread_id=thread_id, saw_json=saw_json)


def parse_json_blob(raw: str) -> ParsedResult:
    """Parse a single JSON object; anything else passes through as text."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return ParsedResult(text="", saw_json=False)
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return ParsedResult(text=trimmed, saw_json=False)
    if not isinstance(payload, dict):
        return ParsedResult(text=trimmed, saw_json=False)

    session_id = payload.get("session_id")
    thread_id = session_id if isinstance(session_id, str) and session_id else None

    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return ParsedResult(text=str(error["message"]), thread_id=thread_id, saw_json=True)

    response = payload.get("response")
    text = response.strip() if isinstance(response, str) else ""
    return ParsedResult(text=text, thread_id=thread_id, saw_json=True)


def parse_text(raw: str) -> ParsedResult:
    return ParsedResult(text=(raw or "").strip(), saw_json=False)


OUTPUT_PARSERS = {
    OutputFormat.CODEX_JSON.value: parse_codex_json,
    OutputFormat.JSON.value: parse_json_blob,
    OutputFormat.TEXT.value: parse_text,
}


class BaseAgentAdapter(ABC):
    """Base class for all agent adapters providing common functionality."""

    def __init__(self, agent_config: AgentConfig):
        """Initialize the base adapter.

        Args:
            agent_config: Resolved agent configuration
        """
        self.config = agent_config
        self.logger = logging.getLogger(f"{__name__}.{agent_config.agent_id}")

    @property
    def agent_id(self) -> str:
        """Get agent identifier."""
        return self.config.agent_id

    @property
    def label(self) -> str:
        """Get the label used in user-facing messages."""
        return self.config.display_name

    @property
    def needs_pty(self) -> bool:
        return self.config.needs_pty

    @property
    def merge_stderr(self) -> bool:
        return self.config.merge_stderr

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_seconds

    @abstractmethod
    def build_command(self, prompt: str, state: TurnState) -> str:
        """Build the shell command line for one turn.

        Args:
            prompt: Final prompt text
            state: Continuity id, prompt expression and knobs

        Returns:
            Command line to run inside the conversation's session
        """
        pass

    def parse_output(self, raw: str) -> ParsedResult:
        """Parse captured output according to the configured output format.

        Never raises: unrecognized output degrades to raw text with
        ``saw_json=False``.
        """
        parser = OUTPUT_PARSERS.get(self.config.output_format, parse_text)
        try:
            return parser(raw)
        except Exception as e:
            self.logger.warning(f"Output parser failed, passing raw text through: {e}")
            return parse_text(raw)

    def list_sessions_command(self) -> Optional[str]:
        """Command listing historical sessions, if the agent supports it."""
        return None

    def parse_session_list(self, output: str) -> Optional[str]:
        """Extract a continuity id from ``list_sessions_command`` output."""
        return None

    def wrap_invocation(self, command: str) -> str:
        """Apply capture semantics to a built agent command."""
        if not self.needs_pty:
            command = f"{command} < /dev/null"
        if self.merge_stderr:
            command = f"{command} 2>&1"
        return command

    def resolve_prompt(self, prompt: str, state: TurnState) -> str:
        """Return the shell word standing for the prompt."""
        if state.prompt_expression:
            return state.prompt_expression
        return shell_quote(prompt)

    def resolve_model(self, state: TurnState) -> Optional[str]:
        return state.model or self.config.model

    def resolve_thinking(self, state: TurnState) -> Optional[str]:
        return state.thinking or self.config.thinking

    def _environment_prefix(self) -> str:
        if not self.config.environment:
            return ""
        assignments = [f"{key}={shell_quote(value)}" for key, value in self.config.environment.items()]
        return " ".join(assignments) + " "

    def get_agent_info(self) -> Dict[str, Any]:
        """Get agent information.

        Returns:
            Agent information dictionary
        """
        return {
            'agent_id': self.agent_id,
            'label': self.label,
            'kind': self.config.kind,
            'command': self.config.command,
            'output_format': self.config.output_format,
            'timeout_seconds': self.config.timeout_seconds,
            'needs_pty': self.needs_pty,
            'merge_stderr': self.merge_stderr,
            'supports_session_listing': self.list_sessions_command() is not None,
        }

    def __repr__(self) -> str:
        """String representation of the adapter."""
        return (
            f"{self.__class__.__name__}("
            f"agent_id='{self.agent_id}', "
            f"kind='{self.config.kind}', "
            f"output='{self.config.output_format}'"
            f")"
        )
