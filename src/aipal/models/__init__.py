"""Data models for aipal."""

from .agent_config import AgentConfig, AgentKind, OutputFormat, ParsedResult, TurnState
from .conversation_session import CommandInvocation, ConversationSession, ScriptInvocation

__all__ = [
    "AgentConfig",
    "AgentKind",
    "OutputFormat",
    "ParsedResult",
    "TurnState",
    "CommandInvocation",
    "ConversationSession",
    "ScriptInvocation",
]
