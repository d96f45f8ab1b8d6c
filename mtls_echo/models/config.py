"""
Configuration data models for the mutual-TLS echo service.
"""
from dataclasses import dataclass
from typing import Optional

from ..exceptions import ConfigError
from ..security.models import Role
from .session import format_address


LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class Config:
    """Settings for one process invocation, either server or client."""

    role: Role = Role.SERVER

    # Network settings. For the server ``host`` is the bind address
    # ("" means all interfaces); for the client it is the server to dial.
    host: str = ""
    port: int = 0

    # Trust material
    ca_cert_path: str = ""
    cert_path: str = ""
    key_path: str = ""

    # Session settings (None means block forever)
    handshake_timeout: Optional[float] = None
    io_timeout: Optional[float] = None
    strict_echo: bool = False

    # Acceptor settings
    max_workers: int = 1
    accept_poll_interval: float = 0.5

    # Application settings
    log_level: str = "INFO"
    log_file_path: Optional[str] = None
    log_json: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types and ranges."""
        try:
            self.role = Role(self.role)
        except ValueError:
            raise ConfigError(f"role must be one of: server, client (got {self.role!r})")

        if isinstance(self.port, bool) or not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ConfigError(f"Invalid port number: {self.port}")

        if self.role is Role.CLIENT and not self.host:
            raise ConfigError("client configuration requires a server host")

        for name in ("handshake_timeout", "io_timeout"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                raise ConfigError(f"{name} must be a positive number of seconds")

        if not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ConfigError("max_workers must be a positive integer")

        if not isinstance(self.accept_poll_interval, (int, float)) or self.accept_poll_interval <= 0:
            raise ConfigError("accept_poll_interval must be a positive number of seconds")

        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    @property
    def address_label(self) -> str:
        """``host:port`` as given on the command line (IPv6 hosts in brackets)."""
        return format_address(self.host or "0.0.0.0", self.port)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: list[ConfigValidationError]
    warnings: list[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
