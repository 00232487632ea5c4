"""Configuration management for replbridge.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """HTTP server configuration."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, ge=0, le=65535)
    workspace_dir: str = Field(default=".", description="Workspace holding .replbridge/")
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")
    trust_forwarded_for: bool = Field(
        default=False,
        description="Take the client address from X-Forwarded-For; enable only behind a proxy"
    )
    tools_config_path: str = Field(default=".replbridge/tools.json")

    # Multi-session setups read their policy from agents.json
    agent_name: str = Field(default="")
    supervisor: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="REPLBRIDGE_SERVER_",
        env_file=".env",
        extra="ignore"
    )


class EditorSettings(BaseSettings):
    """Editor remote-control configuration."""
    uri_scheme: str = Field(default="vscode")
    publisher: str = Field(default="replbridge")
    extension: str = Field(default="vscode-remote-control")
    response_timeout: float = Field(default=5.0, gt=0)
    nonce_ttl: float = Field(default=60.0, gt=0)
    settings_file: str = Field(default=".vscode/settings.json")
    allowed_commands_key: str = Field(default="vscode-remote-control.allowedCommands")
    opener: Optional[str] = Field(
        default=None,
        description="Command used to open editor URIs; platform default when unset"
    )

    model_config = SettingsConfigDict(
        env_prefix="REPLBRIDGE_EDITOR_",
        env_file=".env",
        extra="ignore"
    )


class InterpreterSettings(BaseSettings):
    """Interpreter session configuration."""
    max_output_chars: int = Field(default=20000, gt=0)
    usage_instructions_path: str = Field(default="prompts/usage_instructions.md")
    extended_help_dir: str = Field(default="extended-help")

    model_config = SettingsConfigDict(
        env_prefix="REPLBRIDGE_INTERPRETER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    server: ServerSettings = Field(default_factory=ServerSettings)
    editor: EditorSettings = Field(default_factory=EditorSettings)
    interpreter: InterpreterSettings = Field(default_factory=InterpreterSettings)

    model_config = SettingsConfigDict(
        env_prefix="REPLBRIDGE_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))

    @property
    def workspace(self) -> Path:
        return Path(self.server.workspace_dir).resolve()


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("REPLBRIDGE_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
