"""
Configuration management for NeuroDesk.

Loads configuration from multiple sources in order of priority:
1. Environment variables (NEURODESK_*)
2. User config (~/.config/neurodesk/config.toml)
3. System config (/etc/neurodesk/config.toml)
4. Default config (bundled with package)
"""

import os
import sys
from pathlib import Path
from typing import Any, List, Literal, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pydantic import BaseModel, ConfigDict, Field


class APIConfig(BaseModel):
    """Chat completion API configuration."""
    provider: Literal["openai", "anthropic"] = Field(default="openai", description="LLM provider")
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    model: str = Field(default="gpt-4o-mini", description="Model to use")
    temperature: float = Field(default=0.2, description="Sampling temperature")
    max_tokens: int = Field(default=1024, description="Max tokens per response (Anthropic only)")
    base_url: Optional[str] = Field(default=None, description="Override API endpoint")
    request_timeout: float = Field(default=120.0, description="HTTP request timeout in seconds")


class ExecutorConfig(BaseModel):
    """Process execution configuration."""
    shell: str = Field(default="/bin/bash", description="Shell interpreter used for every command")
    default_timeout: int = Field(default=300, description="Timeout for synthesized commands in seconds")
    max_timeout: int = Field(default=3600, description="Maximum allowed timeout in seconds")
    drain_timeout: float = Field(default=5.0, description="Seconds to wait for pipes to drain after exit")
    step_output_chars: int = Field(default=4000, description="Output kept per plan step turn")
    command_output_chars: int = Field(default=8000, description="Output kept per stream for synthesized commands")
    workspace_root: Optional[str] = Field(
        default=None,
        description="Parent directory for per-run work dirs (None = system temp)"
    )
    auto_install_tools: bool = Field(
        default=True,
        description="Install a synthesized command's missing tool with Homebrew"
    )


class InstallConfig(BaseModel):
    """Install plan configuration."""
    homebrew_prefixes: List[str] = Field(
        default_factory=lambda: ["/opt/homebrew", "/usr/local"],
        description="Well-known Homebrew prefixes probed in order"
    )
    homebrew_install_url: str = Field(
        default="https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh",
        description="Homebrew bootstrap script"
    )
    git_destination: str = Field(default="/usr/local/src", description="Default clone destination")
    paths_file: str = Field(default="/etc/paths.d/homebrew", description="System-wide PATH entry file")


class IntentConfig(BaseModel):
    """Deterministic intent configuration."""
    default_depth: int = Field(default=3, description="Tree depth when none is given")
    min_depth: int = Field(default=1, description="Smallest allowed tree depth")
    max_depth: int = Field(default=8, description="Largest allowed tree depth")
    tree_output_dir: str = Field(default="~/Desktop", description="Where tree listings are saved")
    tree_binaries: List[str] = Field(
        default_factory=lambda: ["/opt/homebrew/bin/tree", "/usr/local/bin/tree"],
        description="Preferred tree executables"
    )


class ConsentConfig(BaseModel):
    """Consent gate configuration."""
    decision_timeout: Optional[float] = Field(
        default=None,
        description="Auto-decline a request after this many seconds (None = wait)"
    )


class RateLimitConfig(BaseModel):
    """Client-side send budget used when the server sends no rate headers."""
    fallback_limit: int = Field(default=60, description="Calls allowed per fallback window")
    window_seconds: int = Field(default=60, description="Fallback window length")
    block_when_exhausted: bool = Field(default=True, description="Refuse to send when out of calls")


class SafetyConfig(BaseModel):
    """Safety checks for synthesized commands."""
    blocked_patterns: list[str] = Field(
        default_factory=lambda: [
            r"rm -rf /\s*$",
            r"diskutil\s+erase",
            r":\(\)\s*\{",
        ],
        description="Commands that are always refused"
    )
    dangerous_patterns: list[str] = Field(
        default_factory=list,
        description="Extra commands that get a warning in the consent prompt"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    enabled: bool = Field(default=True, description="Enable audit logging")
    path: str = Field(default="~/.config/neurodesk/logs/audit.log", description="Audit log path")
    level: str = Field(default="info", description="Log level")


class SessionConfig(BaseModel):
    """Conversation configuration."""
    system_prompt: str = Field(default="You are a helpful assistant.", description="Initial system turn")
    max_history: int = Field(default=1000, description="Maximum turns kept in memory")


class NeuroDeskConfig(BaseModel):
    """Main NeuroDesk configuration."""
    model_config = ConfigDict(extra="ignore")

    api: APIConfig = Field(default_factory=APIConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    intents: IntentConfig = Field(default_factory=IntentConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    ratelimit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)


def get_config_paths() -> list[Path]:
    """Get configuration file paths in order of priority."""
    paths = []

    # User config (highest priority)
    paths.append(Path.home() / ".config" / "neurodesk" / "config.toml")

    # System config
    paths.append(Path("/etc/neurodesk/config.toml"))

    # Default config bundled inside the package
    paths.append(Path(__file__).parent / "data" / "default.toml")

    return paths


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from a TOML file."""
    if path.exists():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


def merge_configs(base: dict, override: dict) -> dict:
    """Deep merge two configuration dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value
    return result


def load_env_overrides() -> dict[str, Any]:
    """Load configuration overrides from environment variables."""
    overrides: dict[str, Any] = {}

    provider = os.environ.get("NEURODESK_PROVIDER")
    if provider:
        overrides.setdefault("api", {})["provider"] = provider.lower()

    # API key: explicit override first, then the provider's own variable
    effective_provider = provider.lower() if provider else None
    api_key = os.environ.get("NEURODESK_API_KEY")
    if not api_key:
        if effective_provider == "anthropic":
            api_key = os.environ.get("ANTHROPIC_API_KEY")
        else:
            api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        overrides.setdefault("api", {})["api_key"] = api_key

    model = os.environ.get("NEURODESK_MODEL")
    if model:
        overrides.setdefault("api", {})["model"] = model

    if os.environ.get("NEURODESK_DEBUG"):
        overrides.setdefault("logging", {})["level"] = "debug"

    return overrides


def load_config() -> NeuroDeskConfig:
    """Load configuration from all sources."""
    config_data: dict[str, Any] = {}

    # Load from files (lowest to highest priority)
    for path in reversed(get_config_paths()):
        file_config = load_toml_config(path)
        config_data = merge_configs(config_data, file_config)

    # Apply environment overrides (highest priority)
    config_data = merge_configs(config_data, load_env_overrides())

    return NeuroDeskConfig(**config_data)


# Global config instance
_config: Optional[NeuroDeskConfig] = None


def get_config() -> NeuroDeskConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None
