"""Agent configuration and per-turn value models.

Provides the resolved agent configuration consumed by the adapters and the
small value objects that travel through a single conversational turn.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentKind(str, Enum):
    """Adapter variant enumeration."""

    CODEX = "codex"
    GEMINI = "gemini"
    GENERIC = "generic"


class OutputFormat(str, Enum):
    """Output format tag understood by the adapter parsers."""

    CODEX_JSON = "codex-json"
    JSON = "json"
    TEXT = "text"


class AgentConfig(BaseModel):
    """Resolved, immutable-per-process configuration of one agent."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    agent_id: str = Field(..., min_length=1, description="Registry identifier")
    kind: AgentKind = Field(..., description="Adapter variant")
    label: Optional[str] = Field(None, description="Human-readable label used in messages")
    command: str = Field(..., min_length=1, description="Invocation command or path")
    args: List[str] = Field(default_factory=list, description="Static arguments")
    template: Optional[str] = Field(None, description="Command template (generic agents)")
    output_format: OutputFormat = Field(default=OutputFormat.TEXT)
    timeout_seconds: float = Field(default=120.0, gt=0, description="Per-turn timeout")
    model: Optional[str] = Field(None, description="Default model when none is set at runtime")
    thinking: Optional[str] = Field(None, description="Default thinking level")
    model_arg: Optional[str] = Field(None, description="Flag used to pass the model")
    thinking_arg: Optional[str] = Field(None, description="Flag used to pass the thinking level")
    merge_stderr: bool = Field(default=False, description="Merge stderr into the captured output")
    needs_pty: bool = Field(default=False, description="Agent requires an interactive terminal")
    auto_approve: bool = Field(default=False, description="Pass the unsafe auto-approve flag")
    environment: Dict[str, str] = Field(default_factory=dict)

    @field_validator('agent_id')
    @classmethod
    def validate_agent_id(cls, v):
        """Normalize the agent identifier."""
        v = v.strip().lower()
        if not v:
            raise ValueError("agent_id cannot be empty")
        return v

    @field_validator('template')
    @classmethod
    def validate_template(cls, v):
        """Templates must reference the prompt."""
        if v is not None and "{prompt}" not in v:
            raise ValueError("template must contain a {prompt} placeholder")
        return v

    @property
    def display_name(self) -> str:
        return self.label or self.agent_id


class TurnState(BaseModel):
    """Continuity and knob state handed to ``build_command``."""

    conversation_id: str
    thread_id: Optional[str] = None
    prompt_expression: Optional[str] = Field(
        None, description="Shell expression yielding the decoded prompt, e.g. \"$PROMPT\""
    )
    model: Optional[str] = None
    thinking: Optional[str] = None


class ParsedResult(BaseModel):
    """An adapter's reading of one turn's raw output."""

    text: str = ""
    thread_id: Optional[str] = None
    saw_json: bool = False
