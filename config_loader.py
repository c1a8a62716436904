"""Configuration loader with YAML support and environment variable substitution."""

import copy
import os
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml


# Environment variables and the config keys they set
ENV_OVERRIDES = {
    'CONFLUENCE_BASE_URL': 'confluence.base_url',
    'CONFLUENCE_USERNAME': 'confluence.username',
    'CONFLUENCE_PASSWORD': 'confluence.password',
    'CONFLUENCE_API_TOKEN': 'confluence.api_token',
    'OUTPUT_DIR': 'export.output_directory',
    'SPACE_KEY': 'export.space_key',
    'WIKIJS_BASE_URL': 'wikijs.base_url',
    'WIKIJS_API_KEY': 'wikijs.api_key',
    'WIKIJS_UPLOAD_PATH': 'wikijs.upload_path',
    'WIKIJS_NAMESPACE': 'wikijs.namespace',
}

DEFAULTS = {
    'confluence': {
        'auth_type': 'basic',
        'api_path': '/wiki/rest/api',
        'verify_ssl': True,
    },
    'export': {
        'output_directory': './exports',
        'download_images': False,
        'html_tables': False,
        'preserve_hierarchy': False,
        'fence': '```',
    },
    'wikijs': {
        'upload_path': '/uploads',
        'namespace': 'en',
        'verify_ssl': True,
        'lowercase_asset_filenames': True,
    },
    'advanced': {
        'request_timeout': 30,
        'max_retries': 3,
        'retry_backoff_factor': 2.0,
        'rate_limit': 0.0,
    },
    'logging': {
        'level': None,
        'file': None,
    },
}

TRUE_VALUES = ('1', 'true', 'yes', 'on')


class ConfigLoader:
    """Handles loading and validation of configuration."""

    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Build the configuration from defaults, an optional YAML file and the environment.

        Args:
            config_path: Optional path to YAML configuration file

        Returns:
            Parsed configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        config = copy.deepcopy(DEFAULTS)

        if config_path:
            if not os.path.exists(config_path):
                raise FileNotFoundError(f"Configuration file not found: {config_path}")

            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}

            if not isinstance(config_data, dict):
                raise ValueError("Configuration file must contain a dictionary")

            _deep_merge(config, cls._substitute_env_vars_recursive(config_data))

        cls._apply_env_overrides(config)
        return config

    @classmethod
    def validate(cls, config: Dict[str, Any], require_wikijs: bool = False) -> None:
        """
        Validate configuration for required fields and correct values.

        Args:
            config: Configuration dictionary to validate
            require_wikijs: Also require Wiki.js settings

        Raises:
            ValueError: If validation fails
        """
        cls._validate_required_field(config, 'confluence.base_url')
        cls._validate_url(get_nested(config, 'confluence.base_url'), 'confluence.base_url')

        auth_type = get_nested(config, 'confluence.auth_type', 'basic')
        if auth_type == 'basic':
            cls._validate_required_field(config, 'confluence.username')
            cls._validate_required_field(config, 'confluence.password')
        elif auth_type == 'bearer':
            cls._validate_required_field(config, 'confluence.api_token')
        else:
            raise ValueError("confluence.auth_type must be 'basic' or 'bearer'")

        if require_wikijs:
            cls._validate_wikijs(config)

        output_dir = get_nested(config, 'export.output_directory')
        if output_dir and os.path.exists(output_dir) and not os.path.isdir(output_dir):
            raise ValueError(f"export.output_directory '{output_dir}' is not a directory")

        timeout = get_nested(config, 'advanced.request_timeout', 30)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("advanced.request_timeout must be a positive number")

    @classmethod
    def _validate_wikijs(cls, config: Dict[str, Any]) -> None:
        cls._validate_required_field(config, 'wikijs.base_url')
        cls._validate_required_field(config, 'wikijs.api_key')
        cls._validate_url(get_nested(config, 'wikijs.base_url'), 'wikijs.base_url')

        upload_path = get_nested(config, 'wikijs.upload_path', '/uploads')
        if not upload_path or not upload_path.startswith('/'):
            raise ValueError("wikijs.upload_path must be an absolute path starting with /")

        lowercase = get_nested(config, 'wikijs.lowercase_asset_filenames', True)
        if not isinstance(lowercase, bool):
            raise ValueError("wikijs.lowercase_asset_filenames must be a boolean")

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any]) -> None:
        for env_name, path in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                set_nested(config, path, value)

        ignore_ssl = os.getenv('IGNORE_SSL_ERRORS')
        if ignore_ssl is not None and ignore_ssl.lower() in TRUE_VALUES:
            set_nested(config, 'confluence.verify_ssl', False)
            set_nested(config, 'wikijs.verify_ssl', False)

    @classmethod
    def _substitute_env_vars_recursive(cls, data: Any) -> Any:
        """Recursively substitute environment variables in data structure."""
        if isinstance(data, dict):
            return {key: cls._substitute_env_vars_recursive(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [cls._substitute_env_vars_recursive(item) for item in data]
        elif isinstance(data, str):
            return cls._substitute_env_vars(data)
        else:
            return data

    @classmethod
    def _substitute_env_vars(cls, value: str) -> str:
        """Substitute environment variables in a string value."""
        def replace_match(match):
            env_value = os.getenv(match.group(1))
            return env_value if env_value is not None else match.group(0)

        return cls.ENV_VAR_PATTERN.sub(replace_match, value)

    @staticmethod
    def _validate_required_field(config: dict, field: str) -> None:
        """Validate that a required field exists and has a value."""
        value = get_nested(config, field)
        if value is None or value == '':
            raise ValueError(f"Missing required configuration: {field}")

        # Check for unsubstituted environment variables
        if isinstance(value, str) and '${' in value:
            match = ConfigLoader.ENV_VAR_PATTERN.search(value)
            var_name = match.group(1) if match else value
            raise ValueError(
                f"Configuration field '{field}' contains unsubstituted environment variable: {value}. "
                f"Please set the {var_name} environment variable or provide a value in config file."
            )

    @staticmethod
    def _validate_url(url: str, field_name: str) -> None:
        """Validate URL format."""
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(f"{field_name} must use http or https scheme: {url}")
        if not parsed.netloc:
            raise ValueError(f"{field_name} missing hostname: {url}")


def get_nested(config: dict, path: str, default: Any = None) -> Any:
    """Safely retrieve nested configuration values using dot notation.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., "confluence.base_url")
        default: Default value if path doesn't exist

    Returns:
        Value at the nested path or default
    """
    value = config
    for key in path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_nested(config: dict, path: str, value: Any) -> None:
    """Set a nested configuration value, creating intermediate sections."""
    keys = path.split('.')
    section = config
    for key in keys[:-1]:
        section = section.setdefault(key, {})
    section[keys[-1]] = value


def _deep_merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


__all__ = ['ConfigLoader', 'get_nested', 'set_nested']
