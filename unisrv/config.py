"""
Configuration Management for the unisrv CLI.

This module handles client configuration including the API host, request
timeout, logging and credential storage settings with support for a
configuration file and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from .exceptions import ConfigurationError, ErrorCode
from .interfaces import IConfigurationManager

logger = logging.getLogger(__name__)

PRODUCTION_API_HOST = "https://api.unisrv.io"
DEVELOPMENT_API_HOST = "http://localhost:8080"

CREDENTIAL_STORAGE_CHOICES = ('auto', 'keyring', 'file')


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the unisrv CLI.

    Supports configuration from:
    1. Command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path: ~/.unisrv/cli.conf."""
        return str(Path.home() / '.unisrv' / 'cli.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers and booleans
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'API_HOST': ('server', 'api_host'),
            'UNISRV_ENVIRONMENT': ('server', 'environment'),
            'UNISRV_TIMEOUT': ('server', 'timeout'),
            'UNISRV_LOG_LEVEL': ('logging', 'level'),
            'UNISRV_CREDENTIAL_STORAGE': ('auth', 'storage'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None and value != '':
                if section not in self._config_data:
                    self._config_data[section] = {}
                self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'environment': 'production',
                'api_host': None,
                'timeout': 30.0,
            },
            'auth': {
                'storage': 'auto',
            },
            'logging': {
                'level': 'WARNING',
                'format': 'standard',
                'file': None,
                'max_size': 10485760,  # 10MB
                'backup_count': 3,
            },
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key
            value: Override value
        """
        if value is not None:
            self._overrides[key] = value

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def get_config_dir(self) -> Path:
        """Get the directory holding the configuration and the file-based session store."""
        return Path(self._config_file).expanduser().parent

    def get_environment(self) -> str:
        return str(self.get_config('server.environment', 'production')).lower()

    def get_api_host(self) -> str:
        """
        Get the API base host.

        A host given without a scheme is treated as HTTPS. Without an explicit
        host the default for the configured environment is used.
        """
        host = self._overrides.get('api_host') or self.get_config('server.api_host')
        if not host:
            if self.get_environment() in ('development', 'dev'):
                return DEVELOPMENT_API_HOST
            return PRODUCTION_API_HOST

        host = str(host).strip().rstrip('/')
        if not host.startswith(('http://', 'https://')):
            host = f"https://{host}"
        return host

    def is_tls_enabled(self) -> bool:
        return not self.get_api_host().startswith('http://')

    def get_api_url(self, path: str) -> str:
        """Build an absolute REST URL from a path relative to the API host."""
        return f"{self.get_api_host()}/{path.lstrip('/')}"

    def get_ws_url(self, path: str) -> str:
        """Build a WebSocket URL; ws:// is used when TLS is disabled."""
        host = self.get_api_host()
        if host.startswith('https://'):
            host = 'wss://' + host[len('https://'):]
        else:
            host = 'ws://' + host[len('http://'):]
        return f"{host}/{path.lstrip('/')}"

    def get_timeout(self) -> float:
        """Get request timeout in seconds."""
        value = self._overrides.get('timeout') or self.get_config('server.timeout', 30.0)
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid timeout value: {value}", config_key='server.timeout')
        if timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive, got {timeout}", config_key='server.timeout')
        return timeout

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self._overrides.get('log_level') or self.get_config('logging.level', 'WARNING')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_credential_storage(self) -> str:
        """Get the credential storage backend: auto, keyring or file."""
        storage = str(self._overrides.get('credential_storage') or self.get_config('auth.storage', 'auto')).lower()
        if storage not in CREDENTIAL_STORAGE_CHOICES:
            raise ConfigurationError(
                f"Invalid credential storage '{storage}', expected one of: {', '.join(CREDENTIAL_STORAGE_CHOICES)}",
                config_key='auth.storage'
            )
        return storage
