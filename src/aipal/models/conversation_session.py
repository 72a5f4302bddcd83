"""Per-turn and per-conversation value models."""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


BEGIN_PREFIX = "<<<BEGIN:"
END_PREFIX = "<<<END:"
MARKER_SUFFIX = ">>>"


class ConversationSession(BaseModel):
    """A conversation and the persistent tmux session that backs it."""

    conversation_id: str = Field(..., min_length=1)
    session_name: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    turns_completed: int = Field(default=0, ge=0)
    last_turn_at: Optional[datetime] = None

    def record_turn(self) -> None:
        self.turns_completed += 1
        self.last_turn_at = datetime.now(timezone.utc)


@dataclass(frozen=True)
class CommandInvocation:
    """Ephemeral value describing one turn's command.

    The token is random per turn so markers printed by an abandoned turn
    can never be mistaken for the current one.
    """

    token: str
    prompt: str
    prompt_base64: str

    @classmethod
    def create(cls, prompt: str) -> "CommandInvocation":
        encoded = base64.b64encode(prompt.encode("utf-8")).decode("ascii")
        return cls(token=str(uuid4()), prompt=prompt, prompt_base64=encoded)

    @property
    def begin_marker(self) -> str:
        return f"{BEGIN_PREFIX}{self.token}{MARKER_SUFFIX}"

    @property
    def end_marker(self) -> str:
        return f"{END_PREFIX}{self.token}{MARKER_SUFFIX}"


@dataclass(frozen=True)
class ScriptInvocation:
    """A validated slash-command script ready to execute."""

    name: str
    path: Path
    argv: List[str] = field(default_factory=list)
    timeout_seconds: float = 30.0
    max_output_bytes: int = 64 * 1024

    @property
    def command(self) -> List[str]:
        return [str(self.path), *self.argv]
