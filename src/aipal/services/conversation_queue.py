"""Per-conversation FIFO task serialization."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aipal.lib.logging_config import bind_conversation


logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class PerConversationQueue:
    """Chains tasks so each conversation runs one task at a time, in order.

    A task starts only after the previous task of the same conversation has
    settled, whatever its outcome. Conversations do not wait on each other.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._tails: Dict[str, asyncio.Task] = {}

    def enqueue(self, conversation_id, task_factory: TaskFactory) -> asyncio.Task:
        """Schedule ``task_factory()`` after everything queued for this conversation.

        Args:
            conversation_id: Conversation the task belongs to
            task_factory: Zero-argument callable returning an awaitable

        Returns:
            The asyncio task; it never raises, failures are logged
        """
        key = str(conversation_id)
        previous = self._tails.get(key)
        task = asyncio.create_task(self._run_after(key, previous, task_factory))
        self._tails[key] = task
        task.add_done_callback(lambda t: self._release(key, t))
        return task

    async def _run_after(self, key: str, previous: Optional[asyncio.Task], task_factory: TaskFactory) -> Any:
        if previous is not None:
            # asyncio.wait neither re-raises the predecessor's error nor cancels it.
            await asyncio.wait([previous])
        try:
            with bind_conversation(key):
                return await task_factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Queue task for conversation {key} failed: {e}", exc_info=True)
            return None

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]

    def pending(self, conversation_id) -> bool:
        """Whether the conversation has unfinished tasks."""
        return str(conversation_id) in self._tails

    async def drain(self) -> None:
        """Wait until every queued task has settled."""
        while self._tails:
            await asyncio.wait(list(self._tails.values()))
