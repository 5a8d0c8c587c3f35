"""
Configuration loading and management for VM LDAP Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. Directory connection settings are grouped into named
configurations so several directories can be described in one file.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from cryptography.fernet import Fernet, InvalidToken

from vm_ldap_sync.errors import ConfigurationMissing

logger = logging.getLogger(__name__)

DEFAULT_CONFIGURATION_NAME = 'default'
DEFAULT_VMS_BATCH_SIZE = 10
DEFAULT_REPLICATION_RETRY_SECONDS = 30

ENCRYPTION_MODES = ('none', 'simple_tls', 'start_tls')


class DirectoryConfig:
    """
    Connection and policy parameters for one named directory.

    The bind password is stored encrypted and decrypted on every read.
    """

    def __init__(self, name: str, settings: Dict[str, Any], secret_key: Optional[str] = None,
                 password_is_plaintext: bool = False):
        self.name = name
        self.settings = settings
        self.server = settings['server']
        self.encryption = settings.get('encryption', 'none').lower()
        self.port = int(settings.get('port') or (636 if self.encryption == 'simple_tls' else 389))
        self.username = settings['username']
        self.treebase = settings['treebase']
        self.hostname_filter = settings.get('hostname_filter', 'fqdn')
        self.vms_batch_size = int(settings.get('vms_batch_size') or DEFAULT_VMS_BATCH_SIZE)
        self.verify_ssl = settings.get('verify_ssl', True)
        self.ca_cert_file = settings.get('ca_cert_file')
        self.connection_timeout = settings.get('connection_timeout', 10)
        self._password = settings['password']
        self._secret_key = secret_key
        self._password_is_plaintext = password_is_plaintext

    @property
    def password(self) -> str:
        """Decrypted bind password."""
        if self._password_is_plaintext or not self._secret_key:
            return self._password
        try:
            return Fernet(self._secret_key.encode()).decrypt(self._password.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise ConfigurationMissing(f"Unable to decrypt password for directory {self.name}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Look up an arbitrary setting, such as site policy values."""
        return self.settings.get(key, default)

    def __repr__(self):
        return (f"DirectoryConfig(name={self.name!r}, server={self.server!r}, port={self.port}, "
                f"encryption={self.encryption!r}, treebase={self.treebase!r})")


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_PASSWORD = 'LDAP_BIND_PASSWORD'
    ENV_SECRET_KEY = 'VM_LDAP_SYNC_SECRET_KEY'

    REQUIRED_DIRECTORY_FIELDS = ['server', 'username', 'password', 'treebase']

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses VM_LDAP_SYNC_CONFIG env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('VM_LDAP_SYNC_CONFIG', 'config.yaml')
        self.config = {}
        self.password_from_env = False

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationMissing: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationMissing(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationMissing(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationMissing(f"Configuration file {self.config_path} must contain a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        password = os.getenv(self.ENV_PASSWORD)
        if password:
            for directory in (self.config.get('directories') or {}).values():
                if isinstance(directory, dict):
                    directory['password'] = password
            self.password_from_env = True
            logger.debug("Applied environment override for directory bind password")

        secret_key = os.getenv(self.ENV_SECRET_KEY)
        if secret_key:
            self.config.setdefault('security', {})['secret_key'] = secret_key
            logger.debug("Applied environment override for secret key")

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directories = self.config.get('directories')
        if not directories or not isinstance(directories, dict):
            errors.append("At least one directory configuration must be defined under 'directories'")
            directories = {}

        for name, directory in directories.items():
            if not isinstance(directory, dict):
                errors.append(f"Directory configuration {name} must be a mapping")
                continue
            for field in self.REQUIRED_DIRECTORY_FIELDS:
                if not directory.get(field):
                    errors.append(f"Missing required field directories.{name}.{field}")

            encryption = str(directory.get('encryption', 'none')).lower()
            if encryption not in ENCRYPTION_MODES:
                errors.append(f"Invalid encryption for directories.{name}: {encryption} "
                              f"(expected one of {', '.join(ENCRYPTION_MODES)})")

            batch_size = directory.get('vms_batch_size')
            if batch_size is not None and (not isinstance(batch_size, int) or batch_size < 1):
                errors.append(f"directories.{name}.vms_batch_size must be a positive integer")

        if errors:
            raise ConfigurationMissing("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for directory in self.config['directories'].values():
            directory.setdefault('encryption', 'none')
            directory.setdefault('hostname_filter', 'fqdn')
            directory.setdefault('vms_batch_size', DEFAULT_VMS_BATCH_SIZE)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'connect_retries': 3,
            'retry_wait_seconds': 5,
            'replication_retry_seconds': DEFAULT_REPLICATION_RETRY_SECONDS
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        self.config.setdefault('security', {})

    def _load_secret_key(self) -> Optional[str]:
        """Read the Fernet key from the environment override or the configured key file."""
        security = self.config.get('security', {})
        if security.get('secret_key'):
            return security['secret_key']

        key_file = security.get('key_file')
        if key_file:
            try:
                with open(key_file, 'r') as f:
                    return f.read().strip()
            except OSError as e:
                raise ConfigurationMissing(f"Unable to read secret key file {key_file}: {e}")
        return None

    def secret_key(self) -> Optional[str]:
        """Fernet key for bind passwords, None when not configured."""
        if not self.config:
            self.load()
        return self._load_secret_key()

    def directory(self, name: str = DEFAULT_CONFIGURATION_NAME) -> DirectoryConfig:
        """
        Build the named directory configuration from the loaded file.

        Args:
            name: Configuration name under 'directories'

        Raises:
            ConfigurationMissing: If the name is not configured
        """
        if not self.config:
            self.load()

        settings = self.config['directories'].get(name)
        if settings is None:
            raise ConfigurationMissing(f"LDAP configuration {name} not found")

        secret_key = self._load_secret_key()
        if not secret_key and not self.password_from_env:
            logger.warning(f"No secret key configured, using stored password for {name} as plaintext")

        return DirectoryConfig(name, settings, secret_key=secret_key,
                               password_is_plaintext=self.password_from_env)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_directory_config(config_path: Optional[str] = None,
                          name: str = DEFAULT_CONFIGURATION_NAME) -> DirectoryConfig:
    """Load the file and return one named directory configuration."""
    loader = ConfigLoader(config_path)
    loader.load()
    return loader.directory(name)


def encrypt_password(password: str, secret_key: str) -> str:
    """Produce the at-rest form of a bind password for the config file."""
    return Fernet(secret_key.encode()).encrypt(password.encode()).decode()


def generate_secret_key() -> str:
    return Fernet.generate_key().decode()
