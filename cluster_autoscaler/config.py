"""
Configuration management for the cluster autoscaler.
"""

import os
import re
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union, List
from dataclasses import dataclass, field, asdict, fields
from datetime import timedelta

from .cloudprovider import NodeGroupSpec


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded"""
    pass


_DURATION_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)(ms|s|m|h)$')
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}

EXPANDERS = ["random", "most-pods", "least-waste", "price"]


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse a duration like "30s", "10m", "1h", "500ms" or plain seconds.

    Raises:
        ValueError: If the value is not a valid duration
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip()
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    match = _DURATION_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit]


def format_duration(value: timedelta) -> str:
    """Render a duration in the shortest exact unit"""
    total_ms = int(round(value.total_seconds() * 1000))
    if total_ms == 0:
        return "0s"
    if total_ms % 3_600_000 == 0:
        return f"{total_ms // 3_600_000}h"
    if total_ms % 60_000 == 0:
        return f"{total_ms // 60_000}m"
    if total_ms % 1000 == 0:
        return f"{total_ms // 1000}s"
    return f"{total_ms}ms"


def _convert_durations(instance) -> None:
    for f in fields(instance):
        if f.type in (timedelta, "timedelta"):
            setattr(instance, f.name, parse_duration(getattr(instance, f.name)))


@dataclass
class AutoscalingOptions:
    """Timings, limits and policies of the autoscaling loop"""
    scan_interval: timedelta = timedelta(seconds=10)
    max_nodes_total: int = 0  # 0 means unlimited
    scale_down_enabled: bool = True
    scale_down_delay_after_add: timedelta = timedelta(minutes=10)
    scale_down_delay_after_delete: timedelta = timedelta(seconds=10)
    scale_down_delay_after_failure: timedelta = timedelta(minutes=3)
    scale_down_unneeded_time: timedelta = timedelta(minutes=10)
    scale_down_utilization_threshold: float = 0.5
    max_empty_bulk_delete: int = 10
    max_drain_nodes_per_tick: int = 1
    unremovable_node_recheck_timeout: timedelta = timedelta(minutes=5)
    node_deletion_timeout: timedelta = timedelta(minutes=10)
    max_node_provision_time: timedelta = timedelta(minutes=15)
    max_node_startup_time: timedelta = timedelta(minutes=15)
    max_total_unready_percentage: float = 45.0
    ok_total_unready_count: int = 3
    new_pod_scale_up_delay: timedelta = timedelta(0)
    expendable_pods_priority_cutoff: int = -10
    expander: str = "random"
    skip_nodes_with_system_pods: bool = True
    skip_nodes_with_local_storage: bool = True
    skip_nodes_with_non_replicated_pods: bool = True
    instance_cache_ttl: timedelta = timedelta(hours=1)

    def __post_init__(self):
        _convert_durations(self)

        if self.scan_interval <= timedelta(0):
            raise ValueError("scan_interval must be positive")

        if self.max_nodes_total < 0:
            raise ValueError("max_nodes_total must be non-negative")

        if not 0 <= self.scale_down_utilization_threshold <= 1:
            raise ValueError("scale_down_utilization_threshold must be between 0 and 1")

        if self.max_empty_bulk_delete < 1:
            raise ValueError("max_empty_bulk_delete must be positive")

        if self.max_drain_nodes_per_tick < 1:
            raise ValueError("max_drain_nodes_per_tick must be positive")

        if not 0 <= self.max_total_unready_percentage <= 100:
            raise ValueError("max_total_unready_percentage must be between 0 and 100")

        if self.ok_total_unready_count < 0:
            raise ValueError("ok_total_unready_count must be non-negative")

        if self.expander not in EXPANDERS:
            raise ValueError(f"expander must be one of {EXPANDERS}")


@dataclass
class BackoffConfig:
    """Exponential backoff applied to node groups after failed scale-ups"""
    initial_backoff: timedelta = timedelta(minutes=5)
    max_backoff: timedelta = timedelta(minutes=30)
    backoff_reset_timeout: timedelta = timedelta(hours=3)

    def __post_init__(self):
        _convert_durations(self)

        if self.initial_backoff <= timedelta(0):
            raise ValueError("initial_backoff must be positive")

        if self.max_backoff < self.initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")


@dataclass
class MonitoringConfig:
    """Configuration for logging, metrics and status history"""
    log_level: str = "INFO"
    enable_metrics: bool = True
    status_history_size: int = 100

    def __post_init__(self):
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_log_levels:
            raise ValueError(f"log_level must be one of {valid_log_levels}")

        if self.status_history_size <= 0:
            raise ValueError("status_history_size must be positive")


@dataclass
class AutoscalerConfig:
    """Main configuration of the cluster autoscaler"""
    autoscaling: AutoscalingOptions = field(default_factory=AutoscalingOptions)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    # "min:max:name" node group specs for the static provider
    node_groups: List[str] = field(default_factory=list)

    # Hourly price per instance type, used by the price expander
    instance_prices: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        for spec in self.node_groups:
            NodeGroupSpec.parse(spec)

        for instance_type, price in self.instance_prices.items():
            if price < 0:
                raise ValueError(f"price of {instance_type} must be non-negative")

    def node_group_specs(self) -> List[NodeGroupSpec]:
        return [NodeGroupSpec.parse(spec) for spec in self.node_groups]


class ConfigManager:
    """
    Manages loading, validation, and merging of configuration from multiple sources.

    Supports loading from:
    - YAML files
    - Environment variables
    - Python dictionaries
    - Default values
    """

    def __init__(self):
        self._config: Optional[AutoscalerConfig] = None
        self._config_sources: List[str] = []

    def load_from_file(self, config_path: Union[str, Path]) -> AutoscalerConfig:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigError: If file cannot be loaded or is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)

            if data is None:
                data = {}

            config = self._create_config_from_dict(data)
            self._config = config
            self._config_sources.append(f"file:{config_path}")

            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {config_path}: {e}")
        except Exception as e:
            raise ConfigError(f"Failed to load config file {config_path}: {e}")

    def load_from_dict(self, config_dict: Dict[str, Any]) -> AutoscalerConfig:
        """
        Load configuration from a dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            Loaded configuration
        """
        try:
            config = self._create_config_from_dict(config_dict)
            self._config = config
            self._config_sources.append("dict")

            return config

        except Exception as e:
            raise ConfigError(f"Failed to load config from dictionary: {e}")

    def load_from_env(self, prefix: str = "CLUSTER_AUTOSCALER_") -> Dict[str, Any]:
        """
        Load configuration values from environment variables.

        CLUSTER_AUTOSCALER_SCAN_INTERVAL=30s sets autoscaling.scan_interval,
        CLUSTER_AUTOSCALER_NODE_GROUPS=1:10:ng1,0:5:ng2 sets node_groups.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Dictionary of configuration values from environment
        """
        env_config = {
            'autoscaling': {},
            'backoff': {},
            'monitoring': {}
        }

        section_mapping = {f.name: 'autoscaling' for f in fields(AutoscalingOptions)}
        section_mapping.update({f.name: 'backoff' for f in fields(BackoffConfig)})
        section_mapping.update({f.name: 'monitoring' for f in fields(MonitoringConfig)})

        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue
            config_key = key[len(prefix):].lower()

            if config_key == 'node_groups':
                env_config['node_groups'] = [spec.strip() for spec in value.split(',') if spec.strip()]
                continue

            # Convert string values to appropriate types
            if value.lower() in ('true', 'false'):
                converted_value = value.lower() == 'true'
            elif value.lstrip('-').isdigit():
                converted_value = int(value)
            elif self._is_float(value):
                converted_value = float(value)
            else:
                converted_value = value

            if config_key in section_mapping:
                env_config[section_mapping[config_key]][config_key] = converted_value

        # Remove empty sections
        env_config = {k: v for k, v in env_config.items() if v}

        if env_config:
            self._config_sources.append(f"env:{prefix}")

        return env_config

    def merge_configs(self, *configs: AutoscalerConfig) -> AutoscalerConfig:
        """
        Merge multiple configurations, with later configs taking precedence.

        Args:
            *configs: Configuration objects to merge

        Returns:
            Merged configuration
        """
        if not configs:
            return AutoscalerConfig()

        merged_dict = config_to_dict(configs[0])

        for config in configs[1:]:
            merged_dict = self._deep_merge_dicts(merged_dict, config_to_dict(config))

        merged_config = self._create_config_from_dict(merged_dict)
        self._config = merged_config
        self._config_sources.append(f"merged:{len(configs)}_configs")

        return merged_config

    def load_default_config(self) -> AutoscalerConfig:
        """Load default configuration"""
        config = AutoscalerConfig()
        self._config = config
        self._config_sources.append("default")

        return config

    def get_config(self) -> Optional[AutoscalerConfig]:
        """Get currently loaded configuration"""
        return self._config

    def get_config_sources(self) -> List[str]:
        """Get list of configuration sources that were loaded"""
        return self._config_sources.copy()

    def save_to_file(self, config_path: Union[str, Path],
                     config: Optional[AutoscalerConfig] = None) -> None:
        """
        Save configuration to a YAML file.

        Args:
            config_path: Path to save configuration file
            config: Configuration to save (uses current config if None)

        Raises:
            ConfigError: If configuration cannot be saved
        """
        if config is None:
            config = self._config

        if config is None:
            raise ConfigError("No configuration to save")

        config_path = Path(config_path)

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(config_path, 'w') as f:
                yaml.safe_dump(config_to_dict(config), f, default_flow_style=False, indent=2, sort_keys=False)

        except Exception as e:
            raise ConfigError(f"Failed to save config to {config_path}: {e}")

    def validate_config(self, config: AutoscalerConfig) -> List[str]:
        """
        Validate cross-field constraints and return list of validation errors.

        Args:
            config: Configuration to validate

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        options = config.autoscaling

        names = set()
        for spec in config.node_group_specs():
            if spec.name in names:
                errors.append(f"Node group {spec.name} declared more than once")
            names.add(spec.name)

            if options.max_nodes_total and spec.min_size > options.max_nodes_total:
                errors.append(f"Min size of {spec.name} exceeds max_nodes_total")

        if options.expander == "price" and not config.instance_prices:
            errors.append("The price expander needs instance_prices")

        if options.scale_down_unneeded_time < options.scan_interval:
            errors.append("scale_down_unneeded_time is shorter than scan_interval")

        return errors

    def _create_config_from_dict(self, data: Dict[str, Any]) -> AutoscalerConfig:
        """Create configuration object from dictionary"""
        autoscaling_data = data.get('autoscaling') or {}
        backoff_data = data.get('backoff') or {}
        monitoring_data = data.get('monitoring') or {}

        return AutoscalerConfig(
            autoscaling=AutoscalingOptions(**autoscaling_data),
            backoff=BackoffConfig(**backoff_data),
            monitoring=MonitoringConfig(**monitoring_data),
            node_groups=list(data.get('node_groups') or []),
            instance_prices=dict(data.get('instance_prices') or {})
        )

    def _deep_merge_dicts(self, dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries"""
        result = dict1.copy()

        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_dicts(result[key], value)
            else:
                result[key] = value

        return result

    def _is_float(self, value: str) -> bool:
        """Check if string represents a float"""
        try:
            float(value)
            return True
        except ValueError:
            return False


def config_to_dict(config: AutoscalerConfig) -> Dict[str, Any]:
    """Plain dictionary form of a config, durations rendered as strings"""
    def convert(value):
        if isinstance(value, timedelta):
            return format_duration(value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [convert(v) for v in value]
        return value

    return convert(asdict(config))


def load_config_from_file(config_path: Union[str, Path]) -> AutoscalerConfig:
    """Convenience function to load configuration from a file"""
    manager = ConfigManager()
    return manager.load_from_file(config_path)


def load_config_with_env_override(config_path: Optional[Union[str, Path]] = None,
                                  env_prefix: str = "CLUSTER_AUTOSCALER_") -> AutoscalerConfig:
    """
    Load configuration from file with environment variable overrides.

    Args:
        config_path: Path to configuration file (optional)
        env_prefix: Prefix for environment variables

    Returns:
        Configuration with environment overrides applied

    Raises:
        ConfigError: If the file or the environment values are invalid
    """
    manager = ConfigManager()

    if config_path:
        base_config = manager.load_from_file(config_path)
    else:
        base_config = manager.load_default_config()

    env_config_dict = manager.load_from_env(env_prefix)
    if not env_config_dict:
        return base_config

    merged = manager._deep_merge_dicts(config_to_dict(base_config), env_config_dict)
    return manager.load_from_dict(merged)


def create_default_config_file(config_path: Union[str, Path]) -> None:
    """
    Create a default configuration file with example values.

    Args:
        config_path: Path where to create the configuration file
    """
    manager = ConfigManager()
    config = AutoscalerConfig(
        node_groups=["1:10:default-pool", "0:5:gpu-pool"],
        instance_prices={"n1-standard-8": 0.38, "n1-standard-8-gpu": 2.86},
    )
    manager.save_to_file(config_path, config)
