"""
Configuration loading and management for the LDAP reconciler.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. The ``objects`` section holds the declared state of
every managed directory object.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_reconcile.lifecycle import MODIFY_MODES
from ldap_reconcile.models import ObjectState, ConfigConversionError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variables filling ldap settings the file leaves empty
    ENV_OVERRIDES = {
        'server_url': 'LDAP_URL',
        'bind_dn': 'LDAP_BIND_DN',
        'bind_password': 'LDAP_BIND_PASSWORD',
    }

    ENV_FLAGS = {
        'insecure_skip_verify': 'LDAP_TLS_INSECURE_VERIFY',
        'start_tls': 'LDAP_TLS_USE_STARTTLS',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration file must contain a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Fill ldap settings from the environment where the file has no value."""
        ldap_config = self.config.get('ldap')
        if ldap_config is None:
            ldap_config = self.config['ldap'] = {}

        for key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value and not ldap_config.get(key):
                ldap_config[key] = env_value
                logger.debug(f"Applied environment value for ldap.{key}")

        for key, env_var in self.ENV_FLAGS.items():
            env_value = os.getenv(env_var)
            if env_value and key not in ldap_config:
                ldap_config[key] = env_value.upper() == 'TRUE'
                logger.debug(f"Applied environment flag for ldap.{key}")

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        if not isinstance(ldap_config, dict):
            errors.append("Section 'ldap' must be a mapping")
            ldap_config = {}
        required_ldap_fields = {
            'server_url': 'LDAP_URL',
            'bind_dn': 'LDAP_BIND_DN',
            'bind_password': 'LDAP_BIND_PASSWORD',
        }
        for field, env_var in required_ldap_fields.items():
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field} (or {env_var} environment variable)")

        modify_mode = self.config.get('modify_mode', 'batch')
        if modify_mode not in MODIFY_MODES:
            errors.append(f"Invalid modify_mode {modify_mode!r}, expected one of {', '.join(MODIFY_MODES)}")

        objects = self.config.get('objects') or {}
        if not isinstance(objects, dict):
            errors.append("Section 'objects' must map object names to definitions")
            objects = {}

        seen_dns = {}
        for name, definition in objects.items():
            try:
                state = ObjectState.from_dict(definition)
            except ConfigConversionError as e:
                errors.append(f"Invalid definition for objects.{name}: {e}")
                continue
            key = state.dn.lower()
            if key in seen_dns:
                errors.append(f"objects.{name} uses the same DN as objects.{seen_dns[key]}: {state.dn}")
            else:
                seen_dns[key] = name

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'start_tls': False,
            'insecure_skip_verify': False,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        self.config.setdefault('state_file', 'reconcile-state.json')
        self.config.setdefault('modify_mode', 'batch')
        if not self.config.get('objects'):
            self.config['objects'] = {}


def declared_objects(config: Dict[str, Any]) -> Dict[str, ObjectState]:
    """Convert the validated ``objects`` section into ObjectState records."""
    return {name: ObjectState.from_dict(definition) for name, definition in config.get('objects', {}).items()}


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
