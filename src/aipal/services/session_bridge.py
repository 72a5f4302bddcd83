"""Marker-delimited capture of agent turns run inside persistent tmux sessions.

Each conversation owns one tmux session. A turn types a single composed
command line into it; the line prints a begin marker, runs the agent and
prints an end marker. The bridge then polls the pane scrollback until the
marker pair for that turn's token appears, or the turn times out.

Turn states: ENSURE_SESSION -> SEND -> WAIT_BEGIN -> CAPTURING -> DONE,
with TIMEOUT as the failure exit.
"""

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Sequence

from aipal.lib.observability import get_bridge_metrics, get_tracer
from aipal.models.conversation_session import CommandInvocation, ConversationSession
from aipal.services.prompt_encoder import compose_command_line


logger = logging.getLogger(__name__)

DEFAULT_SESSION_PREFIX = "aipal"
DEFAULT_HISTORY_LINES = "-5000"
DEFAULT_POLL_INTERVAL = 0.5


class BridgeError(Exception):
    """Base exception for session bridge failures."""
    pass


class TmuxCommandError(BridgeError):
    """A tmux invocation could not be run or exited abnormally."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class AgentTimeoutError(BridgeError):
    """No marker pair appeared before the turn deadline."""

    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(f"Timeout waiting for {label} response")
        self.label = label
        self.timeout_seconds = timeout_seconds


class TurnPhase(str, Enum):
    """Phases of one captured turn."""

    ENSURE_SESSION = "ensure_session"
    SEND = "send"
    WAIT_BEGIN = "wait_begin"
    CAPTURING = "capturing"
    DONE = "done"
    TIMEOUT = "timeout"


def extract_marked_output(scrollback: str, begin_marker: str, end_marker: str) -> Optional[str]:
    """Return the text strictly between a marker pair, or None.

    The last occurrence of the begin marker wins, so leftovers from earlier
    turns are ignored. Markers only count when they sit on their own line.
    """
    begin = f"\n{begin_marker}\n"
    end = f"\n{end_marker}\n"
    begin_idx = scrollback.rfind(begin)
    if begin_idx == -1:
        return None
    start = begin_idx + len(begin)
    end_idx = scrollback.find(end, start)
    if end_idx == -1:
        return None
    return scrollback[start:end_idx].strip("\n")


def _begin_seen(scrollback: str, begin_marker: str) -> bool:
    return f"\n{begin_marker}\n" in scrollback


class TmuxClient:
    """Async control surface over the ``tmux`` binary."""

    def __init__(self, tmux_command: str = "tmux", history_lines: str = DEFAULT_HISTORY_LINES):
        self.tmux_command = tmux_command
        self.history_lines = str(history_lines)

    async def _run(self, args: Sequence[str]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.tmux_command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise TmuxCommandError(f"{self.tmux_command} not found", returncode=None, stderr=str(e)) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            error_msg = stderr.decode("utf-8", errors="ignore").strip()
            raise TmuxCommandError(
                f"tmux {args[0]} failed (exit {process.returncode})",
                returncode=process.returncode,
                stderr=error_msg
            )
        return stdout.decode("utf-8", errors="ignore")

    async def has_session(self, session: str) -> bool:
        try:
            await self._run(["has-session", "-t", session])
            return True
        except TmuxCommandError as e:
            if e.returncode is None:
                raise
            return False

    async def new_session(self, session: str) -> None:
        await self._run(["new-session", "-d", "-s", session])

    async def ensure_session(self, session: str) -> bool:
        """Create the session if absent; returns True when it was created."""
        if await self.has_session(session):
            return False
        await self.new_session(session)
        return True

    async def send_command(self, session: str, command: str) -> None:
        # Literal keys first so words like "Enter" inside the command are typed, not pressed.
        await self._run(["send-keys", "-t", session, "-l", command])
        await self._run(["send-keys", "-t", session, "Enter"])

    async def capture_pane(self, session: str) -> str:
        return await self._run(["capture-pane", "-p", "-J", "-t", session, "-S", self.history_lines])

    async def kill_session(self, session: str) -> bool:
        """Destroy a session; returns False when it did not exist."""
        try:
            await self._run(["kill-session", "-t", session])
            return True
        except TmuxCommandError as e:
            if e.returncode is None:
                raise
            return False


class SessionBridge:
    """Runs composed command lines in per-conversation tmux sessions."""

    def __init__(
        self,
        tmux: Optional[TmuxClient] = None,
        session_prefix: str = DEFAULT_SESSION_PREFIX,
        poll_interval: float = DEFAULT_POLL_INTERVAL
    ):
        self.logger = logging.getLogger(__name__)
        self.tmux = tmux or TmuxClient()
        self.session_prefix = session_prefix
        self.poll_interval = poll_interval
        self._sessions: dict = {}

    def session_name(self, conversation_id) -> str:
        return f"{self.session_prefix}-{conversation_id}"

    def get_session(self, conversation_id) -> Optional[ConversationSession]:
        return self._sessions.get(str(conversation_id))

    async def ensure_session(self, conversation_id) -> ConversationSession:
        """Idempotently verify or create the conversation's tmux session."""
        key = str(conversation_id)
        name = self.session_name(conversation_id)
        created = await self.tmux.ensure_session(name)
        session = self._sessions.get(key)
        if session is None or created:
            session = ConversationSession(conversation_id=key, session_name=name)
            self._sessions[key] = session
        if created:
            self.logger.info(f"Created tmux session {name}")
        return session

    async def run(
        self,
        conversation_id,
        invocation: CommandInvocation,
        agent_command: str,
        timeout_seconds: float,
        label: str
    ) -> str:
        """Run one turn and return its raw output.

        Raises:
            AgentTimeoutError: If the marker pair is not seen in time
            TmuxCommandError: If tmux itself fails
        """
        tracer = get_tracer()
        with tracer.start_as_current_span(
            "agent.turn",
            attributes={"conversation.id": str(conversation_id), "agent.label": label}
        ) as span:
            phase = TurnPhase.ENSURE_SESSION
            session = await self.ensure_session(conversation_id)

            phase = TurnPhase.SEND
            command_line = compose_command_line(invocation, agent_command)
            await self.tmux.send_command(session.session_name, command_line)
            self.logger.debug(f"Sent turn {invocation.token} to {session.session_name}")

            phase = TurnPhase.WAIT_BEGIN
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout_seconds
            while True:
                scrollback = await self.tmux.capture_pane(session.session_name)
                if phase == TurnPhase.WAIT_BEGIN and _begin_seen(scrollback, invocation.begin_marker):
                    phase = TurnPhase.CAPTURING
                output = extract_marked_output(scrollback, invocation.begin_marker, invocation.end_marker)
                if output is not None:
                    phase = TurnPhase.DONE
                    break
                if loop.time() >= deadline:
                    phase = TurnPhase.TIMEOUT
                    break
                await asyncio.sleep(self.poll_interval)

            span.set_attribute("agent.turn.phase", phase.value)
            if phase == TurnPhase.TIMEOUT:
                # The agent keeps running in the pane; a late answer is bracketed
                # by this turn's token and is never matched by later turns.
                self.logger.warning(
                    f"Turn {invocation.token} timed out after {timeout_seconds}s",
                    extra={"conversation_id": str(conversation_id), "agent": label}
                )
                get_bridge_metrics().record_turn(label, "timeout")
                raise AgentTimeoutError(label, timeout_seconds)

            session.record_turn()
            get_bridge_metrics().record_turn(label, "completed")
            return output

    async def reset(self, conversation_id) -> bool:
        """Destroy the conversation's tmux session; returns whether it existed."""
        self._sessions.pop(str(conversation_id), None)
        existed = await self.tmux.kill_session(self.session_name(conversation_id))
        self.logger.info(
            f"Reset session {self.session_name(conversation_id)}",
            extra={"existed": existed}
        )
        return existed

    def active_sessions(self) -> List[ConversationSession]:
        return list(self._sessions.values())
