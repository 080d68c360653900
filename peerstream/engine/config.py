"""
Link Configuration - layered configuration for the engine, transport and CLI.

Configuration Hierarchy (highest to lowest priority):
1. Environment variables (PEERSTREAM_<SECTION>_<FIELD>)
2. Config file (JSON or TOML)
3. Default values

Example:
    config = LinkConfig.load("peerstream.toml")
    print(config.protocol.protocol_version)

    # Override with environment
    # PEERSTREAM_TIMEOUTS_NEGOTIATION_S=15
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .. import MIN_COMPATIBLE_VERSION, PROTOCOL_VERSION, __version__
from ..logging import LoggingOptions, load_logging_options_from_env
from .negotiation import parse_version

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _number(name: str, value: Any, kind: type = float) -> Any:
    """Coerce a numeric setting, naming the field when the value is unusable."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if kind is int and number != value and not isinstance(value, str):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return number


def _flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"{name} must be true or false, got {value!r}")


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class IdentityConfig:
    """What we announce in our hello."""
    client_id: str = "peerstream-client"
    impl: str = "peerstream"
    version: str = __version__

    def __post_init__(self):
        self.client_id = str(self.client_id)
        self.impl = str(self.impl)
        self.version = str(self.version)


@dataclass
class ProtocolConfig:
    """Protocol versions offered in version_negotiate."""
    protocol_version: str = PROTOCOL_VERSION
    min_compatible_version: str = MIN_COMPATIBLE_VERSION
    auto_request_model: bool = True

    def __post_init__(self):
        self.auto_request_model = _flag("protocol.auto_request_model", self.auto_request_model)
        self.protocol_version = str(self.protocol_version)
        self.min_compatible_version = str(self.min_compatible_version)
        if parse_version(self.min_compatible_version) > parse_version(self.protocol_version):
            raise ValueError("min_compatible_version must not exceed protocol_version")


@dataclass
class TimeoutConfig:
    """
    Optional deadlines enforced by LinkEngine.expire().

    None disables a deadline; by default negotiation and streams may stay
    pending indefinitely.
    """
    negotiation_s: Optional[float] = None
    stream_idle_s: Optional[float] = None
    sweep_interval_s: float = 1.0

    def __post_init__(self):
        for name in ("negotiation_s", "stream_idle_s"):
            value = getattr(self, name)
            if value is None:
                continue
            value = _number(f"timeouts.{name}", value)
            if value <= 0:
                raise ValueError(f"{name} must be positive or unset")
            setattr(self, name, value)
        self.sweep_interval_s = _number("timeouts.sweep_interval_s", self.sweep_interval_s)
        if self.sweep_interval_s <= 0:
            raise ValueError("sweep_interval_s must be positive")

    @property
    def enabled(self) -> bool:
        return self.negotiation_s is not None or self.stream_idle_s is not None


@dataclass
class TransportConfig:
    """WebSocket transport configuration."""
    url: Optional[str] = None
    peer_id: Optional[str] = None  # defaults to the URL
    connect_timeout: float = 10.0
    heartbeat_interval: float = 30.0
    max_message_size: int = 16 * 1024 * 1024  # 16 MB
    send_queue_size: int = 100

    def __post_init__(self):
        self.connect_timeout = _number("transport.connect_timeout", self.connect_timeout)
        self.heartbeat_interval = _number("transport.heartbeat_interval", self.heartbeat_interval)
        self.max_message_size = _number("transport.max_message_size", self.max_message_size, int)
        self.send_queue_size = _number("transport.send_queue_size", self.send_queue_size, int)
        if self.url is not None:
            self.url = str(self.url)
        if self.peer_id is not None:
            self.peer_id = str(self.peer_id)
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.send_queue_size <= 0:
            raise ValueError("send_queue_size must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"  # "json" or "text"
    file: Optional[str] = None
    redact: bool = True

    def __post_init__(self):
        self.level = str(self.level)
        self.format = str(self.format)
        self.redact = _flag("logging.redact", self.redact)

    def to_options(self) -> LoggingOptions:
        return LoggingOptions(level=self.level, format=self.format, file=self.file, redact=self.redact)


# =============================================================================
# Main Configuration
# =============================================================================

@dataclass
class LinkConfig:
    """
    Main configuration.

    Combines all configuration sections into a single object.
    """
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "PEERSTREAM",
    ) -> "LinkConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (TOML or JSON)
            env_prefix: Prefix for environment variables

        Returns:
            Loaded and validated configuration
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(config_dict, env_prefix)

        config = cls._from_dict(config_dict)
        config.validate()
        return config

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        content = path.read_text(encoding="utf-8")

        if path.suffix == ".json":
            parsed = json.loads(content)
        elif path.suffix == ".toml":
            parsed = tomllib.loads(content)
        else:
            logger.warning(f"Unknown config file format: {path.suffix}")
            return {}

        if not isinstance(parsed, dict):
            raise ValueError("Config file must contain a mapping at top level")
        return parsed

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        sections = {f.name for f in fields(cls)}
        for key, value in os.environ.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # PEERSTREAM_TIMEOUTS_NEGOTIATION_S -> timeouts.negotiation_s
            parts = key[len(prefix) + 1:].lower().split("_")

            if len(parts) < 2 or parts[0] not in sections:
                continue

            section = parts[0]
            field_name = "_".join(parts[1:])

            if not isinstance(config.get(section), dict):
                config[section] = {}

            config[section][field_name] = cls._parse_env_value(value)

        return config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False
        if value.lower() in ("none", "null", ""):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    @staticmethod
    def _section(section_cls: type, name: str, data: Any) -> Any:
        if data is None:
            return section_cls()
        if not isinstance(data, dict):
            raise ValueError(f"Config section [{name}] must be a mapping")
        known = {f.name for f in fields(section_cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown keys in [{name}]: {', '.join(unknown)}")
        return section_cls(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def _logging_data(data: Any) -> Any:
        """PEERSTREAM_LOG_* supply the defaults beneath file and section env values."""
        if data is not None and not isinstance(data, dict):
            return data
        return {**asdict(load_logging_options_from_env()), **(data or {})}

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "LinkConfig":
        """Build config object from dictionary."""
        return cls(
            identity=cls._section(IdentityConfig, "identity", config_dict.get("identity")),
            protocol=cls._section(ProtocolConfig, "protocol", config_dict.get("protocol")),
            timeouts=cls._section(TimeoutConfig, "timeouts", config_dict.get("timeouts")),
            transport=cls._section(TransportConfig, "transport", config_dict.get("transport")),
            logging=cls._section(LoggingConfig, "logging", cls._logging_data(config_dict.get("logging"))),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix != ".json":
            logger.warning(f"Saving config as JSON despite suffix {path.suffix!r}")
        path.write_text(self.to_json(), encoding="utf-8")

    def validate(self) -> None:
        """Validate cross-field constraints not covered by section __post_init__."""
        if not self.identity.client_id:
            raise ValueError("identity.client_id must not be empty")

        if self.logging.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"Invalid logging level: {self.logging.level}")

        if self.logging.format not in ("json", "text"):
            raise ValueError(f"Invalid logging format: {self.logging.format}")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[LinkConfig] = None


def get_config() -> LinkConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = LinkConfig.load(os.environ.get("PEERSTREAM_CONFIG_PATH"))
    return _global_config


def set_config(config: LinkConfig) -> None:
    """Set global configuration instance."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration to None (forces reload)."""
    global _global_config
    _global_config = None
