"""
Configuration service for building and validating echo service settings.
"""
import os
import configparser
from typing import Optional, Dict, Any, Tuple
import logging

from ..exceptions import ConfigError
from ..models.config import Config, ConfigValidationError, ConfigValidationResult
from ..security.models import Role


class ConfigService:
    """Service for building configuration from command line values and an optional INI file."""

    # Maps configuration file keys to Config fields
    CONFIG_MAPPING = {
        # TLS settings
        "tls.ca_cert_path": ("ca_cert_path", str),
        "tls.cert_path": ("cert_path", str),
        "tls.key_path": ("key_path", str),
        "tls.handshake_timeout": ("handshake_timeout", float),
        "tls.io_timeout": ("io_timeout", float),

        # Server settings
        "server.bind_address": ("host", str),
        "server.max_workers": ("max_workers", int),
        "server.accept_poll_interval": ("accept_poll_interval", float),

        # Client settings
        "client.strict_echo": ("strict_echo", bool),

        # Logging settings
        "logging.level": ("log_level", str),
        "logging.file_path": ("log_file_path", str),
        "logging.json": ("log_json", bool),
    }

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._config: Optional[Config] = None

    def get_config(self) -> Config:
        """
        Get the built configuration.

        Returns:
            Config object

        Raises:
            ConfigError: If no configuration has been built
        """
        if self._config is None:
            raise ConfigError("No configuration built. Call build_config() first.")
        return self._config

    def build_config(self, role: str, address: str, ca_cert_path: str, cert_path: str,
                     key_path: str, config_path: Optional[str] = None,
                     overrides: Optional[Dict[str, Any]] = None) -> Config:
        """
        Build a validated configuration for one invocation.

        Values from the configuration file are applied first, then the
        positional command line values and any non-None overrides.

        Args:
            role: "server" or "client"
            address: Port number (server) or ``host:port`` (client)
            ca_cert_path: Trust anchor file
            cert_path: Local certificate file
            key_path: Local private key file
            config_path: Optional INI file with extra settings
            overrides: Option values from the command line

        Returns:
            Validated Config object

        Raises:
            ConfigError: If any value is invalid
        """
        try:
            role = Role(role)
        except ValueError:
            raise ConfigError(f"Unknown mode: {role}")

        config_kwargs: Dict[str, Any] = {}
        if config_path:
            config_kwargs.update(self._create_config_kwargs(self._load_config_file(config_path)))

        if role is Role.SERVER:
            config_kwargs["port"] = self.parse_port(address)
        else:
            config_kwargs["host"], config_kwargs["port"] = self.parse_target(address)

        config_kwargs.update(
            role=role,
            ca_cert_path=ca_cert_path,
            cert_path=cert_path,
            key_path=key_path
        )

        for key, value in (overrides or {}).items():
            if value is not None:
                config_kwargs[key] = value

        config = Config(**config_kwargs)

        validation_result = self.validate_config(config)
        if validation_result.has_errors():
            raise ConfigError(f"Configuration validation failed:\n{validation_result.get_error_summary()}")

        if validation_result.has_warnings():
            self.logger.warning(f"Configuration warnings:\n{validation_result.get_error_summary()}")

        self._config = config
        return config

    def parse_port(self, value: Any) -> int:
        """Parse a port number, rejecting anything outside 1-65535."""
        text = str(value).strip()
        if not text.isdigit():
            raise ConfigError(f"Invalid port number: {value}")

        port = int(text)
        if not 1 <= port <= 65535:
            raise ConfigError(f"Invalid port number: {value}")
        return port

    def parse_target(self, target: str) -> Tuple[str, int]:
        """
        Split a ``host:port`` connection string.

        IPv6 literals are written in brackets, e.g. ``[::1]:9443``.
        """
        target = target.strip()
        if target.startswith("["):
            host, sep, rest = target[1:].partition("]")
            if not sep or not rest.startswith(":"):
                raise ConfigError(f"Invalid server address: {target} (expected [host]:port)")
            port_text = rest[1:]
        else:
            host, sep, port_text = target.rpartition(":")
            if not sep:
                raise ConfigError(f"Invalid server address: {target} (expected host:port)")

        if not host:
            raise ConfigError(f"Invalid server address: {target} (missing host)")

        return host, self.parse_port(port_text)

    def _load_config_file(self, config_path: str) -> Dict[str, str]:
        """Load configuration data from an INI file as ``section.key`` pairs."""
        if not os.path.exists(config_path):
            raise ConfigError(f"Configuration file not found: {config_path}")

        config_parser = configparser.ConfigParser()

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ConfigError(f"Failed to parse configuration file: {e}")

        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        return config_data

    def _create_config_kwargs(self, config_data: Dict[str, str]) -> Dict[str, Any]:
        """Convert file values to typed Config keyword arguments."""
        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key not in self.CONFIG_MAPPING:
                self.logger.warning(f"Ignoring unknown configuration key: {config_key}")
                continue

            field_name, field_type = self.CONFIG_MAPPING[config_key]
            if raw_value is None or raw_value.strip() == "":
                continue

            try:
                if field_type == bool:
                    value = self._parse_bool(raw_value)
                elif field_type == int:
                    value = int(raw_value)
                elif field_type == float:
                    value = float(raw_value)
                else:
                    value = raw_value.strip()
            except (ValueError, TypeError) as e:
                raise ConfigError(f"Invalid value for {config_key}: {raw_value} ({e})")

            config_kwargs[field_name] = value

        return config_kwargs

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def validate_config(self, config: Config) -> ConfigValidationResult:
        """
        Validate settings that need the file system or cross-field checks.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        cert_files = [
            ("ca_cert_path", config.ca_cert_path),
            ("cert_path", config.cert_path),
            ("key_path", config.key_path)
        ]

        for field_name, cert_path in cert_files:
            if not cert_path:
                errors.append(ConfigValidationError(
                    field_name,
                    f"{field_name} is required"
                ))
            elif os.path.isdir(cert_path):
                errors.append(ConfigValidationError(
                    field_name,
                    f"Expected a PEM file but found a directory: {cert_path}"
                ))
            elif not os.path.exists(cert_path):
                # Reported precisely by the identity loader
                warnings.append(ConfigValidationError(
                    field_name,
                    f"File not found: {cert_path}",
                    "warning"
                ))

        if config.role is Role.SERVER and config.strict_echo:
            warnings.append(ConfigValidationError(
                "strict_echo",
                "strict_echo only affects the client and is ignored by the server",
                "warning"
            ))

        if config.role is Role.CLIENT and config.max_workers > 1:
            warnings.append(ConfigValidationError(
                "max_workers",
                "max_workers only affects the server and is ignored by the client",
                "warning"
            ))

        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist and will be created: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )
