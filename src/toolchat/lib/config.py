"""
Configuration management and validation for toolchat.

Provides configuration loading, validation, and environment overrides
for the chat orchestrator, its HTTP surface and its observability stack.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


_ENV_OVERRIDES: Dict[str, Tuple[List[str], Callable[[str], Any]]] = {
    "TOOLCHAT_LOG_LEVEL": (["logging", "level"], str.upper),
    "TOOLCHAT_HOST": (["server", "host"], str),
    "TOOLCHAT_PORT": (["server", "port"], int),
    "TOOLCHAT_DEBUG": (["debug"], _as_bool),
    "TOOLCHAT_STREAMS_ENABLED": (["streams", "enabled"], _as_bool),
    "TOOLCHAT_STREAM_JOURNAL": (["streams", "journal_directory"], str),
    "TOOLCHAT_INFERENCE_PROVIDER": (["inference", "provider"], str),
    "OTEL_EXPORTER_OTLP_ENDPOINT": (["observability", "otlp_endpoint"], str),
}


class ObservabilityConfig(BaseModel):
    """OpenTelemetry export settings; telemetry stays off unless enabled."""
    enabled: bool = False
    service_name: str = "toolchat"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Log level, format and rotating file locations."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.toolchat/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class ServerConfig(BaseModel):
    """Configuration for the HTTP server."""
    host: str = "localhost"
    port: int = Field(default=8000, ge=1, le=65535)
    enable_cors: bool = False
    cors_origins: List[str] = Field(default_factory=list)


class ChatConfig(BaseModel):
    """Configuration for turn processing."""
    default_chat_model: str = "chat-model"
    tool_free_models: List[str] = Field(default_factory=lambda: ["chat-model-reasoning"])
    max_steps: int = Field(default=5, ge=1, le=20)
    max_turn_duration_seconds: float = Field(default=60.0, gt=0)
    chunk_delay_ms: int = Field(default=10, ge=0)
    quota_window_hours: int = Field(default=24, ge=1)
    enablement_granularity: str = Field(default="toolkit", pattern="^(toolkit|tool)$")
    title_max_length: int = Field(default=80, ge=10, le=200)

    # Geolocation headers set by the edge proxy
    latitude_header: str = "x-vercel-ip-latitude"
    longitude_header: str = "x-vercel-ip-longitude"
    city_header: str = "x-vercel-ip-city"
    country_header: str = "x-vercel-ip-country"


class EntitlementConfig(BaseModel):
    """Per user-type limits."""
    max_messages_per_day: int = Field(default=1000, ge=0)
    available_chat_model_ids: List[str] = Field(
        default_factory=lambda: ["chat-model", "chat-model-reasoning"]
    )


class StreamConfig(BaseModel):
    """Configuration for resumable streams."""
    enabled: bool = True
    journal_directory: str = "~/.toolchat/streams"
    # A detached producer keeps running this long; the turn deadline still applies
    detach_grace_seconds: float = Field(default=30.0, ge=0)
    journal_retention_seconds: float = Field(default=300.0, ge=0)


class InferenceConfig(BaseModel):
    """Configuration for the model and tool providers."""
    provider: str = "echo"
    tool_executor: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class ToolchatConfig(BaseModel):
    """Main toolchat configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    entitlements: Dict[str, EntitlementConfig] = Field(
        default_factory=lambda: {"regular": EntitlementConfig()}
    )
    streams: StreamConfig = Field(default_factory=StreamConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None

    @field_validator("entitlements")
    @classmethod
    def validate_entitlements(cls, v):
        """Require an entitlement for the default user type."""
        if "regular" not in v:
            raise ValueError("entitlements must define the 'regular' user type")
        return v

    def entitlement_for(self, user_type: str) -> EntitlementConfig:
        return self.entitlements.get(user_type, self.entitlements["regular"])


class ConfigurationManager:
    """Manages toolchat configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[ToolchatConfig] = None

    def _get_default_config_path(self) -> str:
        if "TOOLCHAT_CONFIG_PATH" in os.environ:
            return os.environ["TOOLCHAT_CONFIG_PATH"]

        candidates = [
            "~/.toolchat/config.yaml",
            "./config/config.yaml",
            "./config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        return "~/.toolchat/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> ToolchatConfig:
        """Read the YAML file, apply environment overrides and validate."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            self._create_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            config_data = self._merge_environment_config(config_data)

            self.config = ToolchatConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid toolchat configuration in {config_file}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read {config_file}: {e}")

    def _create_default_config(self, config_file: Path) -> None:
        """Write the built-in defaults so operators have a file to edit."""
        config_file.parent.mkdir(parents=True, exist_ok=True)
        defaults = ToolchatConfig().model_dump(mode="json", exclude={"config_file_path"})
        with open(config_file, 'w') as f:
            yaml.safe_dump(defaults, f, default_flow_style=False, sort_keys=False)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``TOOLCHAT_*`` and OTLP environment overrides on top of the file."""
        for env_var, (config_path, convert) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None:
                continue

            section = config_data
            for key in config_path[:-1]:
                section = section.setdefault(key, {})
            section[config_path[-1]] = convert(raw)

        return config_data

    def get_config(self) -> ToolchatConfig:
        if self.config is None:
            raise ConfigurationError("No configuration loaded yet")
        return self.config

    def validate_config(self) -> List[str]:
        """Non-fatal problems an operator should know about."""
        warnings = []
        config = self.get_config()

        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        default_model = config.chat.default_chat_model
        for user_type, entitlement in config.entitlements.items():
            if default_model not in entitlement.available_chat_model_ids:
                warnings.append(
                    f"Default chat model '{default_model}' is not available to user type '{user_type}'"
                )

        if not config.streams.enabled:
            warnings.append("Resumable streams are disabled; disconnected clients cannot resume")

        if config.chat.max_turn_duration_seconds < 10:
            warnings.append("Turn duration ceiling below 10 seconds will cut off most tool round-trips")

        return warnings

    def reload_config(self) -> ToolchatConfig:
        return self.load_config()


class ConfigurationError(Exception):
    """The configuration file is missing, unreadable or invalid."""
    pass


# Process-wide manager
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Load the configuration once for the process."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """The manager set up by initialize_config()."""
    if _config_manager is None:
        raise ConfigurationError("toolchat configuration has not been initialized")
    return _config_manager


def get_config() -> ToolchatConfig:
    return get_config_manager().get_config()
