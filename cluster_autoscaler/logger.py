"""
Logging utilities for the cluster autoscaler
"""
import logging
import sys
from typing import Optional


class AutoscalerLogger:
    """
    Console logger with debug and verbose modes.

    Configures the "cluster_autoscaler" logger, so every module logger of the
    package writes through the handler installed here.
    """

    def __init__(self, name: str = "cluster_autoscaler", debug: bool = False, verbose: bool = False):
        self.logger = logging.getLogger(name)
        self.debug_mode = debug
        self.verbose_mode = verbose

        # Remove existing handlers to avoid duplication
        self.logger.handlers.clear()

        if debug:
            self.logger.setLevel(logging.DEBUG)
        elif verbose:
            self.logger.setLevel(logging.INFO)
        else:
            self.logger.setLevel(logging.WARNING)

        handler = logging.StreamHandler(sys.stdout)

        if debug:
            formatter = logging.Formatter('[%(levelname)s] %(name)s:%(lineno)d - %(message)s')
        else:
            formatter = logging.Formatter('%(message)s')

        handler.setFormatter(formatter)
        self.logger.addHandler(handler)

    def set_level(self, level: str) -> None:
        """Override the level chosen from the modes, e.g. from config"""
        self.logger.setLevel(getattr(logging, level.upper()))

    def debug(self, message: str) -> None:
        self.logger.debug(f"DEBUG: {message}")

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(f"⚠️  {message}")

    def error(self, message: str) -> None:
        self.logger.error(f"❌ Error: {message}")

    def success(self, message: str) -> None:
        self.logger.info(f"✓ {message}")

    def scale_up_info(self, message: str) -> None:
        self.logger.info(f"⬆️  {message}")

    def scale_down_info(self, message: str) -> None:
        self.logger.info(f"⬇️  {message}")

    def cluster_info(self, message: str) -> None:
        self.logger.info(f"🖥️  {message}")


# Global logger instance
_logger: Optional[AutoscalerLogger] = None


def get_logger(debug: bool = False, verbose: bool = False) -> AutoscalerLogger:
    """Get or create the global logger instance"""
    global _logger
    if not debug and not verbose and _logger is not None:
        return _logger
    if _logger is None or _logger.debug_mode != debug or _logger.verbose_mode != verbose:
        _logger = AutoscalerLogger(debug=debug, verbose=verbose)
    return _logger


def set_debug_mode(debug: bool = True) -> None:
    """Enable or disable debug mode"""
    global _logger
    verbose = _logger.verbose_mode if _logger else False
    _logger = AutoscalerLogger(debug=debug, verbose=verbose)


def set_verbose_mode(verbose: bool = True) -> None:
    """Enable or disable verbose mode"""
    global _logger
    debug = _logger.debug_mode if _logger else False
    _logger = AutoscalerLogger(debug=debug, verbose=verbose)
