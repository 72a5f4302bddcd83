"""
Unit tests for agent resolution and per-conversation thread state.
"""

import pytest

from aipal.models.agent_config import AgentConfig, AgentKind, ParsedResult
from aipal.services.agent_registry import AgentRegistry
from aipal.services.codex_adapter import CodexAdapter
from aipal.services.gemini_adapter import GeminiAdapter
from aipal.services.generic_adapter import GenericAdapter
from aipal.services.thread_state import ThreadStateStore


@pytest.fixture
def registry():
    """Registry with the built-in agents and one template agent."""
    local = AgentConfig(
        agent_id="Local",
        kind=AgentKind.GENERIC,
        label="Local LLM",
        command="llm",
        template="llm -m {model} {prompt}",
    )
    return AgentRegistry({"local": local}, default_agent="codex")


class TestAgentRegistry:
    """Test name normalization and adapter lookup."""

    def test_builtin_adapters(self, registry):
        """Test adapter variants."""
        assert isinstance(registry.get("codex"), CodexAdapter)
        assert isinstance(registry.get("gemini"), GeminiAdapter)
        assert isinstance(registry.get("local"), GenericAdapter)

    def test_normalize(self, registry):
        """Test trimming and case folding."""
        assert registry.normalize("  GEMINI ") == "gemini"
        assert registry.normalize("LOCAL") == "local"

    @pytest.mark.parametrize("name", [None, "", "unknown-agent"])
    def test_unknown_falls_back_to_default(self, registry, name):
        """Test that resolution never fails."""
        assert registry.normalize(name) == "codex"
        assert isinstance(registry.get(name), CodexAdapter)

    def test_is_known(self, registry):
        """Test membership checks."""
        assert registry.is_known("Gemini") is True
        assert registry.is_known("nope") is False
        assert registry.is_known(None) is False

    def test_labels(self, registry):
        """Test labels used in messages."""
        assert registry.label("local") == "Local LLM"
        assert registry.label("gemini") == "gemini"

    def test_list_agents(self, registry):
        """Test listing."""
        assert registry.list_agents() == ["codex", "gemini", "local"]

    def test_invalid_default(self):
        """Test that an unknown default falls back to codex."""
        registry = AgentRegistry(default_agent="missing")

        assert registry.default_agent == "codex"

    def test_configured_default(self):
        """Test a configured default agent."""
        registry = AgentRegistry(default_agent="Gemini")

        assert registry.normalize("whatever") == "gemini"

    def test_override_builtin(self):
        """Test that configuration replaces a built-in agent."""
        override = AgentConfig(agent_id="codex", kind=AgentKind.CODEX, command="/opt/codex", args=["--json"])

        adapter = AgentRegistry({"codex": override}).get("codex")

        assert adapter.config.command == "/opt/codex"


class TestThreadStateStore:
    """Test continuity id bookkeeping."""

    def test_update_only_with_thread_id(self):
        """Test that results without ids leave the stored id alone."""
        store = ThreadStateStore()

        assert store.update(1, ParsedResult(text="a", thread_id="t1")) is True
        assert store.update(1, ParsedResult(text="b")) is False
        assert store.get(1) == "t1"

    def test_update_reports_change(self):
        """Test change detection."""
        store = ThreadStateStore()
        store.set("1", "t1")

        assert store.update("1", ParsedResult(thread_id="t1")) is False
        assert store.update("1", ParsedResult(thread_id="t2")) is True
        assert store.get(1) == "t2"

    def test_clear(self):
        """Test forgetting a conversation."""
        store = ThreadStateStore()
        store.set(5, "t")

        assert 5 in store
        assert store.clear(5) is True
        assert store.clear(5) is False
        assert len(store) == 0

    def test_set_requires_value(self):
        """Test that empty ids are refused."""
        with pytest.raises(ValueError):
            ThreadStateStore().set(1, "")
