"""Services implementing agent turns, sessions and the conversation manager."""

from .agent_registry import AgentRegistry
from .conversation_orchestrator import ConversationManager
from .conversation_queue import PerConversationQueue
from .script_sandbox import ScriptSandbox
from .session_bridge import SessionBridge, TmuxClient
from .thread_state import ThreadStateStore

__all__ = [
    "AgentRegistry",
    "ConversationManager",
    "PerConversationQueue",
    "ScriptSandbox",
    "SessionBridge",
    "TmuxClient",
    "ThreadStateStore",
]
