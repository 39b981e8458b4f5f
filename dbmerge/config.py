# dbmerge/config.py
"""
Configuration management for database connections.
Supports YAML configuration files with optional password encryption and global settings.
"""

import os
import re
import logging
from copy import deepcopy
from pathlib import Path
from typing import Dict, Any, Optional

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .defaults import settings
from .database import Database, get_params_for_database
from .cursors import Cursor

try:
    import keyring
    HAS_KEYRING = True
except ImportError:
    HAS_KEYRING = False

logger = logging.getLogger(__name__)

KEYRING_SERVICE = 'dbmerge'
ENCRYPTION_KEY_VAR = 'DBMERGE_ENCRYPTION_KEY'
_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$')


def _substitute_env(value: Any) -> Any:
    """Replace a ``${VAR}`` string with the value of the environment variable."""
    if not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value)
    if not match:
        return value
    env_value = os.environ.get(match.group(1))
    if env_value is None:
        raise ValueError(f"Environment variable {match.group(1)} not set")
    return env_value


def _merge_settings(target: dict, source: dict) -> None:
    """Merge nested setting dicts so a partial ``logging`` section keeps the other defaults."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_settings(target[key], value)
        else:
            target[key] = value


class ConfigManager:
    """
    Manage dbmerge configuration from YAML files.

    Configuration File Structure
    ----------------------------
    ::

        # dbmerge.yml
        settings:
          max_parameters: 2000
          staging: auto
          logging:
            level: DEBUG

        connections:
          warehouse:
            type: sqlserver
            host: sql01
            database: warehouse
            user: loader
            encrypted_password: gAAAAABh...

        passwords:
          api_key:
            password: ${API_KEY}

    Configuration Locations
    -----------------------
    1. File specified in config_file parameter
    2. ``./dbmerge.yml`` or ``./dbmerge.yaml``
    3. ``~/.config/dbmerge.yml`` or ``~/.config/dbmerge.yaml``

    Notes
    -----
    * Values under ``settings`` are merged into ``dbmerge.defaults.settings``
    * Connections require a 'type' field (sqlserver or sqlite)
    * Encrypted passwords need the DBMERGE_ENCRYPTION_KEY environment variable
      or a key stored in the system keyring
    * Passwords can come from environment variables with ${VAR_NAME} syntax
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize config manager and load configuration.

        Raises
        ------
        FileNotFoundError
            If no config file found in any search location
        ValueError
            If config file is invalid or malformed
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._fernet = None

        self._apply_settings()

    def _find_config_file(self, config_file: Optional[str]) -> Path:
        """Find the configuration file."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            return path

        candidates = [
            Path("dbmerge.yml"),
            Path("dbmerge.yaml"),
            Path.home() / ".config" / "dbmerge.yml",
            Path.home() / ".config" / "dbmerge.yaml"
        ]

        for candidate in candidates:
            if candidate.exists():
                return candidate

        raise FileNotFoundError(
            "No config file found. Looked in: " +
            ", ".join(str(c) for c in candidates)
        )

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration file."""
        try:
            with open(self.config_file, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Failed to load config file {self.config_file}: {e}")

        if not isinstance(config, dict):
            raise ValueError(f"Invalid config file {self.config_file}.")

        for name, conn in config.get('connections', {}).items():
            if not isinstance(conn, dict) or 'type' not in conn:
                raise ValueError(f"Invalid connection '{name}' in {self.config_file}: 'type' is required")

        passwords = config.get('passwords', {})
        if not isinstance(passwords, dict):
            raise ValueError(f"Invalid config file {self.config_file}: 'passwords' must be a dictionary")
        for name, password_data in passwords.items():
            if not isinstance(password_data, dict):
                raise ValueError(f"Invalid password entry '{name}' in {self.config_file}: must be a dictionary")
            if 'password' not in password_data and 'encrypted_password' not in password_data:
                raise ValueError(
                    f"Invalid password entry '{name}' in {self.config_file}: "
                    "'password' or 'encrypted_password' is required")

        if not isinstance(config.get('settings', {}), dict):
            raise ValueError(f"Invalid config file {self.config_file}: 'settings' must be a dictionary")

        logger.info(f"Loaded config from {self.config_file}")
        return config

    def _apply_settings(self) -> None:
        """Apply global settings from config."""
        _merge_settings(settings, deepcopy(self.config.get('settings', {})))

        staging = settings.get('staging')
        if staging not in ('auto', 'values', 'temp'):
            raise ValueError(f"Invalid staging setting '{staging}'. Must be 'auto', 'values' or 'temp'")
        output_mapping = settings.get('output_mapping')
        if output_mapping not in ('reflection', 'none'):
            raise ValueError(f"Invalid output_mapping setting '{output_mapping}'. Must be 'reflection' or 'none'")

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value.

        Args:
            key: Setting key (supports dot notation like 'logging.level')
            default: Default value if key not found

        Example:
            level = config.get_setting('logging.level', 'INFO')
        """
        return _lookup(settings, key, default)

    def _get_encryption_key(self) -> bytes:
        """Get encryption key from environment variable or keyring."""
        key_str = os.environ.get(ENCRYPTION_KEY_VAR)
        if key_str:
            logger.debug(f"Using {ENCRYPTION_KEY_VAR} from environment")
            return key_str.encode()

        if HAS_KEYRING:
            key_str = keyring.get_password(KEYRING_SERVICE, 'encryption_key')
            if key_str:
                logger.debug("Using encryption key from keyring")
                return key_str.encode()
            raise ValueError(
                f"Encryption key not found in {ENCRYPTION_KEY_VAR} or the system keyring.\n"
                "Run: python -c \"import dbmerge.config as c; c.store_key()\""
            )
        raise ValueError(
            f"Encryption key not found. Generate one with dbmerge.config.generate_encryption_key() "
            f"and store it in the {ENCRYPTION_KEY_VAR} environment variable."
        )

    def _get_fernet(self) -> Fernet:
        """Get or create Fernet instance for encryption/decryption."""
        if self._fernet is None:
            self._fernet = Fernet(self._get_encryption_key())
        return self._fernet

    def decrypt_password(self, encrypted_password: str) -> str:
        """Decrypt an encrypted password."""
        try:
            return self._get_fernet().decrypt(encrypted_password.encode()).decode()
        except InvalidToken:
            raise ValueError("Failed to decrypt password: invalid token or wrong encryption key")

    def encrypt_password(self, password: str) -> str:
        """Encrypt a password for storage."""
        return self._get_fernet().encrypt(password.encode()).decode()

    def get_connection_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a named connection with its password resolved."""
        connections = self.config.get('connections', {})

        if name not in connections:
            available = list(connections.keys())
            raise ValueError(
                f"Connection '{name}' not found in config. "
                f"Available connections: {available}"
            )

        config = connections[name].copy()
        if 'encrypted_password' in config:
            config['password'] = self.decrypt_password(config.pop('encrypted_password'))
        if 'password' in config:
            config['password'] = _substitute_env(config['password'])
        return config

    def list_connections(self) -> list:
        """List all available connection names."""
        return list(self.config.get('connections', {}).keys())

    def get_password(self, name: str) -> str:
        """
        Get a stored password by name.

        Raises:
            ValueError: If password not found or decryption fails
        """
        passwords = self.config.get('passwords', {})

        if name not in passwords:
            available = list(passwords.keys())
            raise ValueError(
                f"Password '{name}' not found in config. "
                f"Available passwords: {available}"
            )

        password_entry = passwords[name]
        if 'encrypted_password' in password_entry:
            return self.decrypt_password(password_entry['encrypted_password'])
        return _substitute_env(password_entry['password'])

    def list_passwords(self) -> list:
        """List all available password names."""
        return list(self.config.get('passwords', {}).keys())


def _lookup(source: dict, key: str, default: Any = None) -> Any:
    value = source
    for k in key.split('.'):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return default
    return value


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def _get_config_manager(config_file: Optional[str] = None) -> ConfigManager:
    global _config_manager

    if config_file:
        return ConfigManager(config_file)
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_file(config_file: str) -> None:
    """Set the configuration file to use globally."""
    global _config_manager
    _config_manager = ConfigManager(config_file)


def get_setting(key: str, default: Any = None, config_file: Optional[str] = None) -> Any:
    """
    Get a setting value.

    Settings come from the loaded config file merged over ``dbmerge.defaults``.
    When no config file exists the defaults are used as they are.

    Example:
        threshold = get_setting('staging_threshold')
        level = get_setting('logging.level', 'INFO')
    """
    try:
        return _get_config_manager(config_file).get_setting(key, default)
    except FileNotFoundError:
        if config_file:
            raise
        logger.debug("No config file found, using default settings")
        return _lookup(settings, key, default)


def get_password(name: str, config_file: Optional[str] = None) -> str:
    """Get a stored password from configuration."""
    return _get_config_manager(config_file).get_password(name)


def connect(name: str, password: str = None, config_file: Optional[str] = None) -> Database:
    """
    Connect to a named database from configuration.

    Args:
        name: Connection name from config file
        password: Optional password if not stored in config
        config_file: Optional path to config file

    Example:
        db = connect('warehouse')
        cursor = db.cursor()
    """
    config = _get_config_manager(config_file).get_connection_config(name)
    if password:
        config['password'] = password
    info = {key: val for key, val in config.items() if key != 'password'}
    logger.debug(f"Connecting to database {name} with config: {info}")

    db_type = config.pop('type')
    driver = config.pop('driver', None)
    cursor_settings = config.pop('cursor', None)
    if cursor_settings is not None:
        unknown = set(cursor_settings.keys()) - set(Cursor.WRAPPER_SETTINGS)
        if unknown:
            logger.warning(f"Unknown cursor settings (ignored): {unknown}")

    if db_type == 'sqlite':
        from .database import sqlite
        return sqlite(config['database'])

    allowed_params = get_params_for_database(db_type)
    config = {key: val for key, val in config.items() if key in allowed_params}
    db = Database.create(db_type, driver=driver, **config)
    db.name = name
    return db


def generate_encryption_key() -> str:
    """
    Generate a random Fernet encryption key.

    Store the key in the DBMERGE_ENCRYPTION_KEY environment variable or in the
    system keyring with :func:`store_key`.
    """
    return Fernet.generate_key().decode()


def store_key(key: Optional[str] = None, force: bool = False) -> str:
    """Store an encryption key in the system keyring and return it."""
    if not HAS_KEYRING:
        raise ValueError("Keyring not available. Install keyring package to store key in system keyring.")

    current_key = keyring.get_password(KEYRING_SERVICE, 'encryption_key')
    if current_key and not force:
        raise ValueError("Encryption key already stored in system keyring. Use force=True to overwrite.")
    if current_key:
        logger.warning("Encryption key already stored in system keyring. Overwriting!")

    if key is None:
        key = generate_encryption_key()
    else:
        try:
            Fernet(key.encode())
        except ValueError:
            raise ValueError("Invalid encryption key. Must be 32 url-safe base64-encoded bytes.")

    keyring.set_password(KEYRING_SERVICE, 'encryption_key', key)
    logger.info("Stored encryption key in system keyring")
    return key


def encrypt_password(password: str, encryption_key: Optional[str] = None) -> str:
    """
    Encrypt a password for a config file.

    Args:
        password: Password to encrypt
        encryption_key: Optional encryption key. If None, uses DBMERGE_ENCRYPTION_KEY or the keyring
    """
    if encryption_key:
        return Fernet(encryption_key.encode()).encrypt(password.encode()).decode()

    temp_config = ConfigManager.__new__(ConfigManager)
    temp_config._fernet = None
    return temp_config.encrypt_password(password)
