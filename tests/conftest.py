"""
Shared fixtures for the aipal test suite.

Provides an in-memory tmux stand-in that executes nothing: it records the
command lines typed into each session and answers them with scripted agent
output bracketed by the turn's own markers, plus a reply sink that records
what would have been sent to the user.
"""

import re
from typing import Callable, Dict, List, Optional, Union

import pytest

from aipal.services.interfaces import IReplySink


TOKEN_RE = re.compile(r"<<<BEGIN:([0-9a-f-]+)>>>")

Responder = Union[str, Callable[[str], Optional[str]], None]


class FakeTmux:
    """Drop-in replacement for ``TmuxClient`` backed by dictionaries.

    Each command line sent to a session is echoed into its scrollback; the
    next scripted response (a string, or a callable receiving the command
    line) is then printed between that line's markers. A ``None`` response
    leaves the turn unanswered.
    """

    def __init__(self, responses: Optional[List[Responder]] = None):
        self.responses: List[Responder] = list(responses or [])
        self.scrollback: Dict[str, str] = {}
        self.sent: List[tuple] = []
        self.killed: List[str] = []
        self.created: List[str] = []

    async def has_session(self, session: str) -> bool:
        return session in self.scrollback

    async def new_session(self, session: str) -> None:
        self.scrollback[session] = "$ "
        self.created.append(session)

    async def ensure_session(self, session: str) -> bool:
        if await self.has_session(session):
            return False
        await self.new_session(session)
        return True

    async def send_command(self, session: str, command: str) -> None:
        self.sent.append((session, command))
        self.scrollback[session] += command + "\n"

        match = TOKEN_RE.search(command)
        responder = self.responses.pop(0) if self.responses else ""
        output = responder(command) if callable(responder) else responder
        if match is None or output is None:
            return
        token = match.group(1)
        self.scrollback[session] += (
            f"\n<<<BEGIN:{token}>>>\n{output}\n\n<<<END:{token}>>>\n$ "
        )

    async def capture_pane(self, session: str) -> str:
        return self.scrollback.get(session, "")

    async def kill_session(self, session: str) -> bool:
        if session not in self.scrollback:
            return False
        del self.scrollback[session]
        self.killed.append(session)
        return True

    @property
    def commands(self) -> List[str]:
        return [command for _, command in self.sent]


class RecordingSink(IReplySink):
    """Reply sink that keeps every reply in memory."""

    def __init__(self):
        self.texts: List[str] = []
        self.photos: List[str] = []
        self.typing_calls = 0

    async def reply(self, text: str) -> None:
        self.texts.append(text)

    async def reply_photo(self, path: str) -> None:
        self.photos.append(path)

    async def typing(self) -> None:
        self.typing_calls += 1


@pytest.fixture
def fake_tmux():
    """In-memory tmux with no scripted responses."""
    return FakeTmux()


@pytest.fixture
def sink():
    """Reply sink recording texts and photos."""
    return RecordingSink()


@pytest.fixture(autouse=True)
def no_gemini_yolo(monkeypatch):
    """Keep the auto-approve switch from leaking in from the environment."""
    monkeypatch.delenv("GEMINI_YOLO", raising=False)
