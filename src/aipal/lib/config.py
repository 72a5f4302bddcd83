"""
Configuration management and validation for aipal.

Provides configuration loading from YAML, environment variable overrides
and validation for the session bridge and all of its collaborators.
"""

import os
import tempfile
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, ValidationError, model_validator

from aipal.lib.message_utils import DEFAULT_TIME_ZONE
from aipal.models.agent_config import AgentConfig
from aipal.services.agent_registry import DEFAULT_AGENT, builtin_agent_configs


DEFAULT_IMAGE_DIR = os.path.join(tempfile.gettempdir(), "aipal", "images")


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    service_name: str = "aipal"
    service_version: str = "1.0.0"
    environment: str = "development"
    otlp_endpoint: Optional[str] = None
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.aipal/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class SessionConfig(BaseModel):
    """Configuration for the tmux-backed conversation sessions."""
    tmux_command: str = "tmux"
    session_prefix: str = Field(default="aipal", pattern=r"^[A-Za-z0-9_.-]+$")
    history_lines: str = Field(default="-5000", pattern=r"^-?\d+$")
    poll_interval: float = Field(default=0.5, gt=0, le=5.0)
    turn_timeout: float = Field(default=120.0, gt=0)  # 2 minutes


class ArtifactsConfig(BaseModel):
    """Configuration for the artifact (image) root."""
    image_dir: str = DEFAULT_IMAGE_DIR


class ScriptsConfig(BaseModel):
    """Configuration for slash-command scripts."""
    directory: str = "~/.config/aipal/scripts"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_output_bytes: int = Field(default=64 * 1024, gt=0)
    forward_to_agent: bool = False


class TranscriptionConfig(BaseModel):
    """Configuration for the speech-to-text command."""
    command: str = "parakeet-mlx"
    model: Optional[str] = None
    timeout_seconds: float = Field(default=120.0, gt=0)


class PromptConfig(BaseModel):
    """Configuration for prompt assembly."""
    timestamps: bool = True
    time_zone: str = DEFAULT_TIME_ZONE


class SettingsStoreConfig(BaseModel):
    """Configuration for the runtime settings file."""
    path: str = "~/.config/aipal/settings.json"


class AipalConfig(BaseModel):
    """Main aipal configuration."""
    agent: str = DEFAULT_AGENT
    agents: Dict[str, AgentConfig] = Field(default_factory=dict)
    session: SessionConfig = Field(default_factory=SessionConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    scripts: ScriptsConfig = Field(default_factory=ScriptsConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    settings_store: SettingsStoreConfig = Field(default_factory=SettingsStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def complete_agent_overrides(cls, data: Any) -> Any:
        """Fill agent entries from their key and from the built-in agents.

        An entry for a built-in agent only needs the fields it overrides.
        """
        if not isinstance(data, dict) or not isinstance(data.get("agents"), dict):
            return data
        builtins = builtin_agent_configs()
        agents = {}
        for key, entry in data["agents"].items():
            if isinstance(entry, AgentConfig):
                agents[key] = entry
                continue
            entry = dict(entry or {})
            agent_id = str(entry.get("agent_id") or key).strip().lower()
            base = builtins[agent_id].model_dump(exclude_unset=True) if agent_id in builtins else {}
            base.update(entry)
            base["agent_id"] = agent_id
            agents[key] = base
        return {**data, "agents": agents}


class ConfigurationManager:
    """Manages aipal configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[AipalConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        # Check environment variable first
        if "AIPAL_CONFIG_PATH" in os.environ:
            return os.environ["AIPAL_CONFIG_PATH"]

        # Check standard locations
        candidates = [
            "~/.aipal/config/config.yaml",
            "./config/config.yaml",
            "./config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        # Return default location
        return "~/.aipal/config/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> AipalConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            # Create default configuration
            self._create_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            if not isinstance(config_data, dict):
                raise ConfigurationError(f"Config file {config_file} must contain a mapping")

            # Merge with environment variables
            config_data = self._merge_environment_config(config_data)

            # Validate and create configuration object
            self.config = AipalConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except ConfigurationError:
            raise
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")
        except Exception as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

    def _create_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)

        default_config = {
            "agent": os.getenv("AIPAL_AGENT", DEFAULT_AGENT),
            "session": {
                "session_prefix": "aipal",
                "history_lines": "-5000",
                "turn_timeout": 120
            },
            "artifacts": {
                "image_dir": DEFAULT_IMAGE_DIR
            },
            "scripts": {
                "directory": "~/.config/aipal/scripts",
                "timeout_seconds": 30,
                "forward_to_agent": False
            },
            "transcription": {
                "command": "parakeet-mlx"
            },
            "prompt": {
                "timestamps": True,
                "time_zone": DEFAULT_TIME_ZONE
            },
            "logging": {
                "level": os.getenv("AIPAL_LOG_LEVEL", "INFO"),
                "directory": "~/.aipal/logs"
            },
            "agents": {
                "codex": {
                    "model": None
                },
                "gemini": {
                    "model": None,
                    "auto_approve": False
                }
            }
        }

        with open(config_file, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, indent=2)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "AIPAL_AGENT": ["agent"],
            "AIPAL_DEBUG": ["debug"],
            "TMUX_SESSION_PREFIX": ["session", "session_prefix"],
            "TMUX_LINES": ["session", "history_lines"],
            "AGENT_TIMEOUT_SECONDS": ["session", "turn_timeout"],
            "IMAGE_DIR": ["artifacts", "image_dir"],
            "SCRIPTS_DIR": ["scripts", "directory"],
            "PARAKEET_CMD": ["transcription", "command"],
            "PARAKEET_MODEL": ["transcription", "model"],
            "AIPAL_LOG_LEVEL": ["logging", "level"],
            "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"],
            "GEMINI_YOLO": ["agents", "gemini", "auto_approve"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                # Type conversion for specific fields
                if env_var == "AGENT_TIMEOUT_SECONDS":
                    value = float(value)
                elif env_var in ("AIPAL_DEBUG", "GEMINI_YOLO"):
                    value = value.strip().lower() in ("true", "1", "yes", "on")
                elif env_var == "AIPAL_LOG_LEVEL":
                    value = value.upper()

                # Set nested configuration value
                current = config_data
                for key in config_path[:-1]:
                    if not isinstance(current.get(key), dict):
                        current[key] = {}
                    current = current[key]
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> AipalConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        known_agents = set(builtin_agent_configs()) | {a.agent_id for a in config.agents.values()}
        if config.agent.strip().lower() not in known_agents:
            warnings.append(f"Default agent '{config.agent}' is not configured, '{DEFAULT_AGENT}' will be used")

        if config.observability.trace_sampling_ratio < 1.0 and config.observability.environment == "development":
            warnings.append("Trace sampling ratio less than 1.0 in development environment")

        scripts_dir = Path(config.scripts.directory).expanduser()
        if not scripts_dir.is_dir():
            warnings.append(f"Scripts directory does not exist: {scripts_dir}")

        # Validate agent configurations
        for agent_id, agent_config in config.agents.items():
            if agent_config.auto_approve:
                warnings.append(f"Agent {agent_id} runs with auto-approval enabled")
            if os.sep in agent_config.command and not Path(agent_config.command).expanduser().exists():
                warnings.append(f"Agent command path does not exist: {agent_config.command}")

        return warnings


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


# Global configuration manager instance
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Initialize global configuration manager."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """Get the global configuration manager instance."""
    if _config_manager is None:
        raise ConfigurationError("Configuration not initialized. Call initialize_config() first.")
    return _config_manager


def get_config() -> AipalConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
