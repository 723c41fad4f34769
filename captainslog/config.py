"""
Configuration management for the Captain's Log proxy.

Handles loading configuration from YAML files and applying environment
variable overrides.

Configuration Priority (highest to lowest):
    1. Environment variables (CAPTAINSLOG_WHISPER_URL, CAPTAINSLOG_PORT, ...)
    2. Explicit path passed to ServerConfig / get_config
    3. $CAPTAINSLOG_CONFIG
    4. User config: $XDG_CONFIG_HOME/captainslog/config.yaml
                    or ~/.config/captainslog/config.yaml
    5. ./config.yaml (current directory)
    6. Packaged defaults: captainslog/config.yaml
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_WHISPER_URL = "http://127.0.0.1:5000"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8090

PACKAGED_CONFIG = Path(__file__).parent / "config.yaml"


def get_user_config_dir() -> Path:
    """
    Get the user configuration directory.

    Returns:
        $XDG_CONFIG_HOME/captainslog when XDG_CONFIG_HOME is set,
        otherwise ~/.config/captainslog
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "captainslog"
    return Path.home() / ".config" / "captainslog"


class ServerConfig:
    """
    Proxy configuration manager.

    Loads the first readable YAML file in priority order. The packaged
    defaults always exist, so a fresh install runs without any setup.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, searches in priority order.
        """
        self.config: Dict[str, Any] = {}
        self._config_path = config_path
        self._loaded_from: Optional[Path] = None
        self._load_config()

    def _find_config_candidates(self) -> list[Path]:
        """Return readable config file candidates in priority order."""
        if self._config_path:
            return [self._config_path] if self._config_path.is_file() else []

        candidates: list[Path] = []
        env_path = os.environ.get("CAPTAINSLOG_CONFIG")
        if env_path:
            candidates.append(Path(env_path))
        candidates.extend(
            [
                get_user_config_dir() / "config.yaml",
                Path.cwd() / "config.yaml",
                PACKAGED_CONFIG,
            ]
        )

        readable: list[Path] = []
        for path in candidates:
            if not path.is_file():
                continue
            try:
                with path.open("r", encoding="utf-8"):
                    pass
                readable.append(path)
            except OSError:
                continue
        return readable

    def _load_config(self) -> None:
        """Load configuration from the first candidate that parses."""
        candidates = self._find_config_candidates()

        if not candidates:
            raise RuntimeError(
                "No configuration file found. "
                "Expected one of:\n"
                f"  - {self._config_path} (explicit path)\n"
                f"  - {get_user_config_dir() / 'config.yaml'} (user config)\n"
                "  - ./config.yaml (current directory)\n"
                f"  - {PACKAGED_CONFIG} (packaged defaults)"
            )

        errors: list[tuple[Path, Exception]] = []
        for config_file in candidates:
            try:
                with config_file.open("r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
                if not isinstance(loaded, dict):
                    raise yaml.YAMLError("top-level YAML value must be a mapping")
                self.config = loaded
                self._loaded_from = config_file
                return
            except (yaml.YAMLError, OSError) as e:
                errors.append((config_file, e))
                if self._config_path:
                    break

        details = "\n".join(f"  - {path}: {err}" for path, err in errors)
        raise RuntimeError("Failed to load configuration. Tried:\n" + details)

    @property
    def loaded_from(self) -> Optional[Path]:
        """Return the path of the loaded configuration file."""
        return self._loaded_from

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value by nested key path.

        Supports nested key access with multiple arguments:
            config.get("backend", "whisper_url")
            config.get("logging", "level", default="INFO")
            config.get("defaults", default={})

        Raises:
            TypeError: If any key argument is not a string
        """
        if not keys:
            return self.config

        for i, key in enumerate(keys):
            if not isinstance(key, str):
                raise TypeError(
                    f"All configuration keys must be strings, got {type(key).__name__} "
                    f"for keys[{i}]: {repr(key)}. "
                    f"If you want to provide a default value, use the 'default=' keyword argument: "
                    f"cfg.get({', '.join(repr(k) for k in keys[:i] if isinstance(k, str))}, default={repr(key)})"
                )

        value: Any = self.config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    @property
    def server(self) -> Dict[str, Any]:
        """Get server configuration."""
        return self.config.get("server") or {}

    @property
    def backend(self) -> Dict[str, Any]:
        """Get backend configuration."""
        return self.config.get("backend") or {}

    @property
    def defaults(self) -> Dict[str, Any]:
        """Get default transcription options."""
        return self.config.get("defaults") or {}

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging") or {}


def _non_empty_string(value: Any) -> Optional[str]:
    """Return a trimmed string only when value is a non-empty string."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed if trimmed else None


def _env_int(key: str) -> Optional[int]:
    value = os.environ.get(key, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def resolve_backend_url(config: ServerConfig) -> str:
    """Resolve the Whisper backend base URL (env > file > default)."""
    return (
        _non_empty_string(os.environ.get("CAPTAINSLOG_WHISPER_URL"))
        or _non_empty_string(config.get("backend", "whisper_url"))
        or DEFAULT_WHISPER_URL
    )


def resolve_listen_address(config: ServerConfig) -> tuple[str, int]:
    """Resolve (host, port) for uvicorn."""
    host = (
        _non_empty_string(os.environ.get("CAPTAINSLOG_HOST"))
        or _non_empty_string(config.get("server", "host"))
        or DEFAULT_HOST
    )
    port = _env_int("CAPTAINSLOG_PORT")
    if port is None:
        configured = config.get("server", "port", default=DEFAULT_PORT)
        port = configured if isinstance(configured, int) else DEFAULT_PORT
    return host, port


def resolve_auth_token(config: ServerConfig) -> Optional[str]:
    """Resolve the optional bearer token; None disables authentication."""
    return _non_empty_string(
        os.environ.get("CAPTAINSLOG_AUTH_TOKEN")
    ) or _non_empty_string(config.get("server", "auth_token"))


def resolve_logging_config(config: ServerConfig) -> Dict[str, Any]:
    """Merge logging settings from the file with CAPTAINSLOG_LOG_* overrides."""
    resolved = dict(config.logging)
    log_dir = _non_empty_string(os.environ.get("CAPTAINSLOG_LOG_DIR"))
    if log_dir:
        resolved["directory"] = log_dir
    log_level = _non_empty_string(os.environ.get("CAPTAINSLOG_LOG_LEVEL"))
    if log_level:
        resolved["level"] = log_level
    return resolved


# Global config instance
_config: Optional[ServerConfig] = None


def get_config(config_path: Optional[Path] = None) -> ServerConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = ServerConfig(config_path)
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None
