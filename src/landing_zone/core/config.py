"""Configuration management for landing zone orchestration.

This module handles YAML configuration loading, validation, and
environment variable override support for the account inventory source,
deployment settings, retry policy and VPC sharing layout.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from .errors import ConfigurationError
from .retry import RetryPolicy


__all__ = ['Configuration', 'ConfigurationError', 'VpcConfigEntry']


@dataclass(frozen=True)
class VpcConfigEntry:
    """A VPC definition together with its owning account and OU."""

    account_key: str
    ou_key: Optional[str]
    vpc_config: Dict[str, Any]

    @property
    def region(self) -> Optional[str]:
        return self.vpc_config.get('region')


class Configuration:
    """Configuration management with YAML loading and validation.

    This class handles loading configuration from YAML files,
    validating the structure, and supporting environment variable
    overrides for region, profile and the parameters table.
    """

    DEFAULT_STACK_NAME_PREFIX = 'LandingZone'
    DEFAULT_MAX_WORKERS = 8
    DEFAULT_TIMEOUT_SECONDS = 3600
    DEFAULT_POLL_INTERVAL_SECONDS = 15

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Configuration':
        """Build a configuration from an in-memory dictionary.

        Args:
            data: Configuration dictionary with the same layout as the YAML file

        Returns:
            Validated Configuration instance
        """
        config = cls.__new__(cls)
        config._config = dict(data)
        config._config_path = None
        config._apply_environment_overrides()
        config._validate_configuration()
        return config

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Resolved Path object to configuration file

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/settings.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

    def _validate_configuration(self) -> None:
        """Validate configuration has required fields.

        Raises:
            ConfigurationError: When required fields are missing or malformed
        """
        if not isinstance(self._config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        if 'aws' not in self._config:
            raise ConfigurationError("Required configuration section 'aws' is missing")

        aws_config = self._config['aws']
        if not isinstance(aws_config, dict) or 'home_region' not in aws_config:
            raise ConfigurationError("Required field 'aws.home_region' is missing")

        home_region = aws_config["home_region"]
        if not isinstance(home_region, str) or not home_region:
            raise ConfigurationError("Field 'aws.home_region' must be a non-empty string")

        if 'governed_regions' in aws_config:
            governed_regions = aws_config["governed_regions"]
            if not isinstance(governed_regions, list):
                raise ConfigurationError("Field 'aws.governed_regions' must be a list")

            if home_region not in governed_regions:
                governed_regions.insert(0, home_region)
                self._config["aws"]["governed_regions"] = governed_regions

        accounts = self._config.get('accounts', {})
        if not isinstance(accounts, dict):
            raise ConfigurationError("Section 'accounts' must be a mapping")
        if accounts.get('parameters_table') and accounts.get('file'):
            raise ConfigurationError(
                "Only one of 'accounts.parameters_table' and 'accounts.file' may be set"
            )

        for key in ('deployment.max_workers', 'deployment.timeout_seconds',
                    'deployment.poll_interval_seconds', 'retry.max_attempts'):
            value = self.get(key)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ConfigurationError(f"Field '{key}' must be a positive integer")

        for key in ('retry.base_delay_seconds', 'retry.max_delay_seconds'):
            value = self.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                raise ConfigurationError(f"Field '{key}' must be a non-negative number")

        vpcs = self._config.get('vpcs', [])
        if not isinstance(vpcs, list):
            raise ConfigurationError("Section 'vpcs' must be a list")
        for index, vpc in enumerate(vpcs):
            if not isinstance(vpc, dict) or not vpc.get('account'):
                raise ConfigurationError(f"Field 'vpcs[{index}].account' is missing")

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if "AWS_REGION" in os.environ:
            self._set_nested_value("aws.home_region", os.environ["AWS_REGION"])

        if "AWS_PROFILE" in os.environ:
            self._set_nested_value("aws.profile_name", os.environ["AWS_PROFILE"])

        if "LZ_PARAMETERS_TABLE" in os.environ:
            self._set_nested_value(
                "accounts.parameters_table", os.environ["LZ_PARAMETERS_TABLE"]
            )

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if key not in current or not isinstance(current[key], dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_home_region(self) -> str:
        """Get AWS home region.

        Returns:
            AWS home region string
        """
        return self.get("aws.home_region")

    def get_governed_regions(self) -> List[str]:
        """Get list of governed regions.

        Returns:
            List of AWS region strings
        """
        regions = self.get("aws.governed_regions", [])
        if not regions:
            regions = [self.get_home_region()]
        return regions

    def get_profile_name(self) -> Optional[str]:
        return self.get("aws.profile_name")

    def get_parameters_table(self) -> Optional[str]:
        return self.get("accounts.parameters_table")

    def get_accounts_file(self) -> Optional[str]:
        return self.get("accounts.file")

    def get_stack_name_prefix(self) -> str:
        return self.get("deployment.stack_name_prefix", self.DEFAULT_STACK_NAME_PREFIX)

    def get_assume_role_name(self) -> Optional[str]:
        return self.get("deployment.assume_role_name")

    def get_max_workers(self) -> int:
        return self.get("deployment.max_workers", self.DEFAULT_MAX_WORKERS)

    def get_timeout_seconds(self) -> int:
        return self.get("deployment.timeout_seconds", self.DEFAULT_TIMEOUT_SECONDS)

    def get_poll_interval_seconds(self) -> int:
        return self.get(
            "deployment.poll_interval_seconds", self.DEFAULT_POLL_INTERVAL_SECONDS
        )

    def get_retry_policy(self) -> RetryPolicy:
        """Build the retry policy for transient AWS failures.

        Returns:
            RetryPolicy configured from the 'retry' section
        """
        defaults = RetryPolicy()
        return RetryPolicy(
            max_attempts=self.get("retry.max_attempts", defaults.max_attempts),
            base_delay_seconds=self.get("retry.base_delay_seconds", defaults.base_delay_seconds),
            max_delay_seconds=self.get("retry.max_delay_seconds", defaults.max_delay_seconds),
        )

    def get_vpc_configs(self) -> List[VpcConfigEntry]:
        """Get VPC definitions with their owning account and OU.

        Returns:
            List of VpcConfigEntry in configuration order
        """
        return [
            VpcConfigEntry(
                account_key=vpc['account'],
                ou_key=vpc.get('ou'),
                vpc_config=vpc,
            )
            for vpc in self.get("vpcs", []) or []
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self._config.copy()
