"""
Cluster Autoscaler - grows and shrinks node groups so pending pods fit and idle nodes go away
"""

from .autoscaler import AutoscalerRunner, StaticAutoscaler, TickStatus, build_autoscaler
from .config import AutoscalerConfig, AutoscalingOptions, ConfigError, ConfigManager, load_config_from_file
from .errors import AutoscalerError, ErrorType
from .logger import get_logger, set_debug_mode, set_verbose_mode

# Other modules available for advanced usage:
# - cluster_autoscaler.cloudprovider / static_provider: Node group contract and in-memory provider
# - cluster_autoscaler.kube_client: Cluster API contract and in-memory cluster
# - cluster_autoscaler.simulation: Fixture loading and cluster simulation
# - cluster_autoscaler.cli: Command-line interface (requires typer)

__version__ = "1.0.0"
__all__ = [
    "AutoscalerRunner", "StaticAutoscaler", "TickStatus", "build_autoscaler",
    "AutoscalerConfig", "AutoscalingOptions", "ConfigError", "ConfigManager", "load_config_from_file",
    "AutoscalerError", "ErrorType", "get_logger", "set_debug_mode", "set_verbose_mode",
]
