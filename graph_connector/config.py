"""
Connector configuration.

Configuration is a YAML document with three sections: graph (tenant,
application credentials and transport settings), logging and
error_handling. Application credentials may come from GRAPH_* environment
variables instead of the file. validate_config() reports every problem at
once and fills in defaults for everything optional.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """The configuration file is missing, unreadable or fails validation."""
    pass


# Dotted config key -> environment variable that overrides it
ENV_OVERRIDES = {
    'graph.tenant_id': 'GRAPH_TENANT_ID',
    'graph.client_id': 'GRAPH_CLIENT_ID',
    'graph.client_secret': 'GRAPH_CLIENT_SECRET',
}

REQUIRED_GRAPH_FIELDS = ('tenant_id', 'client_id', 'client_secret')

TRUSTSTORE_TYPES = ('PEM', 'PKCS12')

MAX_PAGE_SIZE = 999

DEFAULTS = {
    'graph': {
        'base_url': 'https://graph.microsoft.com/v1.0',
        'scope': 'https://graph.microsoft.com/.default',
        'verify_ssl': True,
        'timeout': 30,
        'page_size': 100,
        'force_password_change': False,
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'WARNING',
    },
    'error_handling': {
        'max_retries': 3,
        'retry_wait_seconds': 2,
        'retry_backoff': 2.0,
    },
}


class ConfigLoader:
    """Reads the YAML configuration file and applies environment overrides."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: YAML file to read; defaults to $CONFIG_PATH, then 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        """
        Read, override and validate the configuration.

        Raises:
            ConfigurationError: If the file cannot be read or parsed, or validation fails
        """
        self.config = self._read()
        self._apply_env_overrides()
        self.config = validate_config(self.config)

        logger.info(f"Loaded configuration from {self.config_path}")
        return self.config

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                document = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        return document

    def _apply_env_overrides(self):
        for dotted_key, env_var in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            _set_nested_value(self.config, dotted_key, value)
            logger.debug(f"{dotted_key} taken from {env_var}")


def _set_nested_value(config: Dict[str, Any], dotted_key: str, value: Any):
    *parents, leaf = dotted_key.split('.')
    section = config
    for name in parents:
        if not isinstance(section.get(name), dict):
            section[name] = {}
        section = section[name]
    section[leaf] = value


def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Check a configuration dictionary and complete it with defaults.

    Returns:
        config itself, with missing optional settings filled in

    Raises:
        ConfigurationError: Listing every problem found
    """
    if config is None:
        raise ConfigurationError("Configuration not provided")

    errors = _graph_errors(config.get('graph')) + _error_handling_errors(config.get('error_handling'))
    if errors:
        details = '\n'.join(f"  - {error}" for error in errors)
        raise ConfigurationError(f"Configuration validation failed:\n{details}")

    _apply_defaults(config)
    return config


def _graph_errors(graph: Any) -> List[str]:
    if not isinstance(graph, dict):
        return ["Missing required section: graph"] + [
            f"Missing required Graph field: {field}" for field in REQUIRED_GRAPH_FIELDS
        ]

    errors = [f"Missing required Graph field: {field}" for field in REQUIRED_GRAPH_FIELDS if not graph.get(field)]

    base_url = graph.get('base_url')
    if base_url and not str(base_url).startswith(('https://', 'http://')):
        errors.append(f"Invalid graph.base_url: {base_url}")

    page_size = graph.get('page_size')
    if page_size is not None and (isinstance(page_size, bool) or not isinstance(page_size, int)
                                  or not 1 <= page_size <= MAX_PAGE_SIZE):
        errors.append(f"graph.page_size must be an integer between 1 and {MAX_PAGE_SIZE}, got {page_size!r}")

    truststore_type = graph.get('truststore_type')
    if truststore_type and str(truststore_type).upper() not in TRUSTSTORE_TYPES:
        errors.append(f"Unsupported graph.truststore_type: {truststore_type}")

    return errors


def _error_handling_errors(error_handling: Any) -> List[str]:
    if not isinstance(error_handling, dict):
        return []
    max_retries = error_handling.get('max_retries')
    if max_retries is not None and (not isinstance(max_retries, int) or max_retries < 0):
        return [f"error_handling.max_retries must be a non-negative integer, got {max_retries!r}"]
    return []


def _apply_defaults(config: Dict[str, Any]):
    for section_name, section_defaults in DEFAULTS.items():
        section = config.get(section_name)
        if not isinstance(section, dict):
            section = config[section_name] = {}
        for key, value in section_defaults.items():
            section.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate the configuration file at config_path."""
    return ConfigLoader(config_path).load()
