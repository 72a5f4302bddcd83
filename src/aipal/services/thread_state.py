"""Per-conversation continuity identifiers."""

import logging
from typing import Dict, Optional

from aipal.models.agent_config import ParsedResult


logger = logging.getLogger(__name__)


class ThreadStateStore:
    """Maps conversation ids to the last successful agent thread id.

    Only a parsed result that actually carries a thread id updates the
    store; failures and id-less results leave the previous value alone.
    """

    def __init__(self):
        self._threads: Dict[str, str] = {}

    def get(self, conversation_id) -> Optional[str]:
        return self._threads.get(str(conversation_id))

    def set(self, conversation_id, thread_id: str) -> None:
        if not thread_id:
            raise ValueError("thread_id cannot be empty")
        self._threads[str(conversation_id)] = thread_id

    def update(self, conversation_id, parsed: ParsedResult) -> bool:
        """Record the thread id carried by ``parsed``; returns whether it changed."""
        if not parsed.thread_id:
            return False
        key = str(conversation_id)
        if self._threads.get(key) == parsed.thread_id:
            return False
        self._threads[key] = parsed.thread_id
        logger.debug(f"Conversation {key} now continues thread {parsed.thread_id}")
        return True

    def clear(self, conversation_id) -> bool:
        return self._threads.pop(str(conversation_id), None) is not None

    def __contains__(self, conversation_id) -> bool:
        return str(conversation_id) in self._threads

    def __len__(self) -> int:
        return len(self._threads)
