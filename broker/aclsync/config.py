"""
Configuration management for mosquitto-sync.

All configuration is done via environment variables - no config files are read.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Paths to the ACL, password and broker config files derive from one directory
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the MOSQUITTO_* names stable; deployments template them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class MosquittoConfig:
    """Broker files and binaries.

    Attributes:
        config_dir: Directory holding mosquitto.conf, the ACL and password files
        exe_dir: Directory holding the broker binary (empty = resolve via PATH)
        binary: Broker executable name
        config_file: Broker config file name inside config_dir
        acl_file: ACL file name inside config_dir
        password_file: Password file name inside config_dir
        passwd_binary: Password utility executable
        verbose: Pass -v to the broker
        stop_by_name_fallback: Kill by process name when no handle is held
        stop_timeout_seconds: Grace period between terminate and kill
        log_file: File receiving broker stdout/stderr (None = discard)
        acl_file_mode: Permission bits applied to the rewritten ACL file
    """

    config_dir: str = "/etc/mosquitto"
    exe_dir: str = ""
    binary: str = "mosquitto"
    config_file: str = "mosquitto.conf"
    acl_file: str = "mosquitto.acl"
    password_file: str = "passwordfile"
    passwd_binary: str = "mosquitto_passwd"
    verbose: bool = True
    stop_by_name_fallback: bool = True
    stop_timeout_seconds: float = 10.0
    log_file: str | None = None
    acl_file_mode: int = 0o644

    @classmethod
    def from_env(cls) -> MosquittoConfig:
        """Load configuration from environment variables."""
        return cls(
            config_dir=os.getenv("MOSQUITTO_DIR", "/etc/mosquitto"),
            exe_dir=os.getenv("MOSQUITTO_EXE_DIR", ""),
            binary=os.getenv("MOSQUITTO_BINARY", "mosquitto"),
            config_file=os.getenv("MOSQUITTO_CONF_FILE", "mosquitto.conf"),
            acl_file=os.getenv("MOSQUITTO_ACL_FILE", "mosquitto.acl"),
            password_file=os.getenv("MOSQUITTO_PASSWORD_FILE", "passwordfile"),
            passwd_binary=os.getenv("MOSQUITTO_PASSWD_BINARY", "mosquitto_passwd"),
            verbose=_env_bool("MOSQUITTO_VERBOSE", "true"),
            stop_by_name_fallback=_env_bool("MOSQUITTO_STOP_BY_NAME", "true"),
            stop_timeout_seconds=float(os.getenv("MOSQUITTO_STOP_TIMEOUT", "10")),
            log_file=os.getenv("MOSQUITTO_LOG_FILE") or None,
            acl_file_mode=int(os.getenv("ACL_FILE_MODE", "644"), 8),
        )

    @property
    def acl_path(self) -> Path:
        return Path(self.config_dir) / self.acl_file

    @property
    def password_path(self) -> Path:
        return Path(self.config_dir) / self.password_file

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir) / self.config_file

    @property
    def binary_path(self) -> str:
        """Broker executable, joined with exe_dir when one is configured."""
        if self.exe_dir:
            return str(Path(self.exe_dir) / self.binary)
        return self.binary


@dataclass(frozen=True)
class CommandConfig:
    """External command execution.

    Attributes:
        timeout_seconds: Deadline for run-to-completion commands
    """

    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> CommandConfig:
        """Load configuration from environment variables."""
        return cls(timeout_seconds=float(os.getenv("COMMAND_TIMEOUT_SECONDS", "30")))


@dataclass(frozen=True)
class DatabaseConfig:
    """User/topic directory storage.

    Attributes:
        path: SQLite database file
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    path: str = "/var/lib/mosquitto-sync/broker.db"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("DATABASE_PATH", "/var/lib/mosquitto-sync/broker.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        mosquitto: Broker files and binaries
        command: External command execution
        database: User/topic directory storage
        http: HTTP server configuration
        observability: Logging configuration
    """

    mosquitto: MosquittoConfig = field(default_factory=MosquittoConfig)
    command: CommandConfig = field(default_factory=CommandConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            mosquitto=MosquittoConfig.from_env(),
            command=CommandConfig.from_env(),
            database=DatabaseConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.mosquitto.config_dir:
            raise ValueError("MOSQUITTO_DIR is required")
        if not self.mosquitto.acl_file or not self.mosquitto.password_file:
            raise ValueError("MOSQUITTO_ACL_FILE and MOSQUITTO_PASSWORD_FILE must not be empty")
        if self.command.timeout_seconds <= 0:
            raise ValueError("COMMAND_TIMEOUT_SECONDS must be positive")
        if self.mosquitto.stop_timeout_seconds < 0:
            raise ValueError("MOSQUITTO_STOP_TIMEOUT must not be negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.isdir(self.mosquitto.config_dir):
            logger.warning(
                f"Mosquitto directory does not exist: {self.mosquitto.config_dir}. "
                "ACL and password files cannot be created until it does."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "mosquitto_dir": self.mosquitto.config_dir,
                "mosquitto_binary": self.mosquitto.binary_path,
                "acl_path": str(self.mosquitto.acl_path),
                "password_path": str(self.mosquitto.password_path),
                "stop_by_name_fallback": self.mosquitto.stop_by_name_fallback,
                "command_timeout": self.command.timeout_seconds,
                "database_path": self.database.path,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "log_level": self.observability.log_level,
            },
        )
