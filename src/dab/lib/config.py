"""
Configuration management and validation for DAB.

Provides configuration loading, validation, and management for the
Diagnostic Agent Bridge chat client, its model backend, progress streaming
and the tool provider launch specs.
"""

import json
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field, ValidationError, field_validator

from dab.models.provider import ProviderSpec


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "dab-client"
    service_version: str = "1.0.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="WARNING", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="simple", pattern="^(structured|simple)$")
    directory: str = "~/.dab/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class LLMProviderSettings(BaseModel):
    """Endpoint and model for one OpenAI-compatible completion backend."""
    base_url: str
    model: str
    credential_prefix: str


DEFAULT_LLM_PROVIDERS: Dict[str, Dict[str, str]] = {
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "model": "openai/gpt-oss-20b",
        "credential_prefix": "GROQ",
    },
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        "model": "gemini-2.5-flash",
        "credential_prefix": "GEMINI",
    },
}


class LLMConfig(BaseModel):
    """Configuration for the language model backend."""
    provider: str = Field(default="gemini", pattern="^(gemini|groq)$")
    providers: Dict[str, LLMProviderSettings] = Field(
        default_factory=lambda: {
            name: LLMProviderSettings(**settings)
            for name, settings in DEFAULT_LLM_PROVIDERS.items()
        }
    )
    temperature: float = Field(default=1.0, ge=0.0, le=2.0)
    max_completion_tokens: int = Field(default=8192, gt=0)
    native_tool_calls: bool = False
    request_timeout: int = Field(default=120, gt=0)

    def active(self) -> LLMProviderSettings:
        """Settings of the selected provider."""
        if self.provider not in self.providers:
            raise ConfigurationError(f"LLM provider settings not found: {self.provider}")
        return self.providers[self.provider]


class StreamingConfig(BaseModel):
    """Configuration for live progress streaming."""
    enabled: bool = True
    host: str = "localhost"
    port: int = Field(default=3001, ge=1, le=65535)
    connect_timeout: float = Field(default=5.0, gt=0)
    tools: List[str] = Field(default_factory=lambda: ["network-ping", "network-traceroute"])
    correlation_argument: str = "sessionId"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class SessionConfig(BaseModel):
    """Configuration for the chat session."""
    max_workflow_iterations: int = Field(default=10, ge=1, le=100)
    tool_retries: int = Field(default=2, ge=1)
    retry_delay: float = Field(default=1.0, ge=0.0)
    tool_call_timeout: int = Field(default=3000, gt=0)  # seconds


class DABConfig(BaseModel):
    """Main DAB configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    servers_config: str = "./servers_config.json"

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None


class ConfigurationManager:
    """Manages DAB configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[DABConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        # Check environment variable first
        if "DAB_CONFIG_PATH" in os.environ:
            return os.environ["DAB_CONFIG_PATH"]

        # Check standard locations
        candidates = [
            "~/.dab/config/config.yaml",
            "./config/config.yaml",
            "./config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        # Return default location
        return "~/.dab/config/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> DABConfig:
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

            # Merge with environment variables
            config_data = self._merge_environment_config(config_data)

            # Validate and create configuration object
            self.config = DABConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

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
            "logging": {
                "level": os.getenv("DAB_LOG_LEVEL", "WARNING"),
                "directory": "~/.dab/logs"
            },
            "llm": {
                "provider": os.getenv("LLM_PROVIDER", "gemini")
            },
            "streaming": {
                "host": os.getenv("SSE_HOST", "localhost"),
                "port": int(os.getenv("SSE_PORT", "3001"))
            },
            "session": {
                "max_workflow_iterations": 10
            },
            "servers_config": "./servers_config.json"
        }

        with open(config_file, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, indent=2)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "DAB_LOG_LEVEL": ["logging", "level"],
            "DAB_DEBUG": ["debug"],
            "LLM_PROVIDER": ["llm", "provider"],
            "SSE_HOST": ["streaming", "host"],
            "SSE_PORT": ["streaming", "port"],
            "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                # Type conversion for specific fields
                if env_var == "SSE_PORT":
                    value = int(value)
                elif env_var == "DAB_DEBUG":
                    value = value.lower() in ("true", "1", "yes")

                # Set nested configuration value
                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> DABConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        servers_path = Path(config.servers_config).expanduser()
        if not servers_path.exists():
            warnings.append(f"Provider configuration file does not exist: {servers_path}")

        if config.streaming.enabled and not config.streaming.tools:
            warnings.append("Streaming enabled but no streaming tools configured")

        return warnings


class ServersConfig(BaseModel):
    """Shape of ``servers_config.json``."""
    mcpServers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @field_validator('mcpServers')
    @classmethod
    def validate_servers(cls, v):
        """Every entry needs a command."""
        for name, entry in v.items():
            if not isinstance(entry, dict) or "command" not in entry:
                raise ValueError(f"Server '{name}' is missing a command")
        return v


def load_provider_specs(file_path: str) -> List[ProviderSpec]:
    """Load the provider launch specs from a ``servers_config.json`` file."""
    path = Path(file_path).expanduser()
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        servers = ServersConfig(**data)
        return [
            ProviderSpec(
                id=name,
                command=entry["command"],
                args=entry.get("args", []),
                env=entry.get("env"),
            )
            for name, entry in servers.mcpServers.items()
        ]
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Failed to load configuration from {path}: {e}")


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


def get_config() -> DABConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
