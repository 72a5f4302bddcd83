"""
Unit tests for configuration loading, the settings store and the transcriber.
"""

import asyncio
import json
import stat
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from aipal.lib.config import AipalConfig, ConfigurationError, ConfigurationManager, get_config, initialize_config
from aipal.services.interfaces import TranscriberNotFoundError, TranscriptionError
from aipal.services.settings_store import JsonSettingsStore
from aipal.services.transcriber import ParakeetTranscriber


ENV_VARS = [
    "AIPAL_AGENT", "AIPAL_DEBUG", "TMUX_SESSION_PREFIX", "TMUX_LINES", "AGENT_TIMEOUT_SECONDS",
    "IMAGE_DIR", "SCRIPTS_DIR", "PARAKEET_CMD", "PARAKEET_MODEL", "AIPAL_LOG_LEVEL",
    "OTEL_EXPORTER_OTLP_ENDPOINT", "AIPAL_CONFIG_PATH",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Remove configuration variables inherited from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    """Write a configuration file and return its path."""
    def write(data):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(data) if not isinstance(data, str) else data)
        return path
    return write


class TestConfigurationManager:
    """Test loading, defaults and environment overrides."""

    def test_default_file_created(self, tmp_path):
        """Test that a missing file is created with defaults."""
        path = tmp_path / "nested" / "config.yaml"

        config = ConfigurationManager(str(path)).load_config()

        assert path.exists()
        assert config.agent == "codex"
        assert config.session.history_lines == "-5000"
        assert config.prompt.time_zone == "Europe/Madrid"
        assert config.agents["codex"].command == "codex"
        assert config.config_file_path == str(path)

    def test_partial_builtin_override(self, config_file):
        """Test that built-in agents only need the fields they change."""
        path = config_file({"agents": {"gemini": {"model": "gemini-2.5-pro", "timeout_seconds": 300}}})

        config = ConfigurationManager(str(path)).load_config()
        gemini = config.agents["gemini"]

        assert gemini.kind == "gemini"
        assert gemini.command == "gemini"
        assert gemini.output_format == "json"
        assert gemini.model == "gemini-2.5-pro"
        assert gemini.timeout_seconds == 300
        assert "timeout_seconds" in gemini.model_fields_set

    def test_builtin_override_keeps_default_timeout_unset(self, config_file):
        """Test that untouched fields stay unset so global defaults apply."""
        path = config_file({"agents": {"codex": {"model": "o3"}}})

        codex = ConfigurationManager(str(path)).load_config().agents["codex"]

        assert "timeout_seconds" not in codex.model_fields_set

    def test_custom_agent_takes_key_as_id(self, config_file):
        """Test template agents declared under their id."""
        path = config_file({
            "agent": "local",
            "agents": {"local": {"kind": "generic", "command": "llm", "template": "llm {prompt}"}},
        })

        config = ConfigurationManager(str(path)).load_config()

        assert config.agents["local"].agent_id == "local"
        assert config.agent == "local"

    def test_environment_overrides(self, config_file, monkeypatch):
        """Test environment variable merging."""
        path = config_file({"session": {"session_prefix": "fromfile"}})
        monkeypatch.setenv("TMUX_SESSION_PREFIX", "fromenv")
        monkeypatch.setenv("AGENT_TIMEOUT_SECONDS", "30")
        monkeypatch.setenv("AIPAL_LOG_LEVEL", "debug")
        monkeypatch.setenv("GEMINI_YOLO", "true")
        monkeypatch.setenv("IMAGE_DIR", "/tmp/aipal-test-images")

        config = ConfigurationManager(str(path)).load_config()

        assert config.session.session_prefix == "fromenv"
        assert config.session.turn_timeout == 30.0
        assert config.logging.level == "DEBUG"
        assert config.agents["gemini"].auto_approve is True
        assert config.artifacts.image_dir == "/tmp/aipal-test-images"

    def test_config_path_from_environment(self, config_file, monkeypatch):
        """Test AIPAL_CONFIG_PATH."""
        path = config_file({"agent": "gemini"})
        monkeypatch.setenv("AIPAL_CONFIG_PATH", str(path))

        manager = ConfigurationManager()

        assert manager.config_path == str(path)
        assert manager.load_config().agent == "gemini"

    def test_invalid_yaml(self, config_file):
        """Test YAML syntax errors."""
        path = config_file("agent: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            ConfigurationManager(str(path)).load_config()

    def test_validation_error(self, config_file):
        """Test schema violations."""
        path = config_file({"session": {"poll_interval": -1}})

        with pytest.raises(ConfigurationError, match="validation failed"):
            ConfigurationManager(str(path)).load_config()

    def test_non_mapping_file(self, config_file):
        """Test files that are not mappings."""
        path = config_file("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            ConfigurationManager(str(path)).load_config()

    def test_get_config_before_load(self):
        """Test access before loading."""
        with pytest.raises(ConfigurationError):
            ConfigurationManager("/nonexistent/config.yaml").get_config()

    def test_validate_config_warnings(self, config_file, tmp_path):
        """Test configuration warnings."""
        path = config_file({
            "agent": "missing",
            "scripts": {"directory": str(tmp_path / "no-scripts")},
            "agents": {"gemini": {"auto_approve": True}},
        })
        manager = ConfigurationManager(str(path))
        manager.load_config()

        warnings = manager.validate_config()

        assert any("Default agent 'missing'" in w for w in warnings)
        assert any("Scripts directory does not exist" in w for w in warnings)
        assert any("auto-approval" in w for w in warnings)

    def test_module_accessors(self, config_file):
        """Test the process-wide configuration accessors."""
        path = config_file({"agent": "gemini"})

        manager = initialize_config(str(path))

        assert get_config() is manager.get_config()
        assert get_config().agent == "gemini"

    def test_model_defaults(self):
        """Test the configuration model without a file."""
        config = AipalConfig()

        assert config.scripts.forward_to_agent is False
        assert config.observability.otlp_endpoint is None


class TestJsonSettingsStore:
    """Test the JSON settings file."""

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, tmp_path):
        """Test that a missing file is an empty store."""
        store = JsonSettingsStore(tmp_path / "settings.json")

        assert await store.read_config() == {}

    @pytest.mark.asyncio
    async def test_update_merges_and_persists(self, tmp_path):
        """Test shallow merge and persistence."""
        path = tmp_path / "sub" / "settings.json"
        store = JsonSettingsStore(path)

        await store.update_config({"agent": "gemini", "model": "pro"})
        result = await store.update_config({"model": None, "thinking": "high"})

        assert result == {"agent": "gemini", "thinking": "high"}
        assert json.loads(path.read_text()) == result
        assert [p.name for p in path.parent.iterdir()] == ["settings.json"]

    @pytest.mark.asyncio
    async def test_concurrent_updates(self, tmp_path):
        """Test that concurrent updates do not lose keys."""
        store = JsonSettingsStore(tmp_path / "settings.json")

        await asyncio.gather(*(store.update_config({f"k{i}": i}) for i in range(10)))

        assert len(await store.read_config()) == 10

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, tmp_path):
        """Test that unreadable JSON is ignored."""
        path = tmp_path / "settings.json"
        path.write_text("{broken")

        assert await JsonSettingsStore(path).read_config() == {}


class TestParakeetTranscriber:
    """Test the transcription command wrapper."""

    def test_build_args(self, tmp_path):
        """Test the command line."""
        transcriber = ParakeetTranscriber(model="mlx-community/parakeet", output_dir=str(tmp_path))

        args = transcriber.build_args("/tmp/a.ogg", "out")

        assert args == [
            "/tmp/a.ogg", "--output-dir", str(tmp_path), "--output-format", "txt",
            "--output-template", "out", "--model", "mlx-community/parakeet",
        ]

    @pytest.mark.asyncio
    async def test_transcribe_reads_and_removes_output(self, tmp_path):
        """Test a successful transcription with a fake command."""
        fake = tmp_path / "fake-parakeet"
        fake.write_text(
            "#!/bin/sh\n"
            "# <audio> --output-dir D --output-format txt --output-template T\n"
            'printf "  hola mundo \\n" > "$3/$7.txt"\n'
        )
        fake.chmod(fake.stat().st_mode | stat.S_IXUSR)
        output_dir = tmp_path / "out"
        transcriber = ParakeetTranscriber(command=str(fake), output_dir=str(output_dir))

        text = await transcriber.transcribe("/tmp/a.ogg")

        assert text == "hola mundo"
        assert list(output_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        """Test that a missing command has its own error kind."""
        transcriber = ParakeetTranscriber(command=str(tmp_path / "nope"), output_dir=str(tmp_path))

        with pytest.raises(TranscriberNotFoundError):
            await transcriber.transcribe("/tmp/a.ogg")

    @pytest.mark.asyncio
    async def test_failure_carries_stderr(self, tmp_path):
        """Test non-zero exits."""
        process = AsyncMock()
        process.communicate.return_value = (b"", b"bad audio")
        process.returncode = 1
        transcriber = ParakeetTranscriber(output_dir=str(tmp_path))

        with patch(
            "aipal.services.transcriber.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process)
        ):
            with pytest.raises(TranscriptionError) as exc_info:
                await transcriber.transcribe("/tmp/a.ogg")

        assert exc_info.value.returncode == 1
        assert exc_info.value.stderr == "bad audio"
