"""
Centralized logging configuration for the retrieval engine.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

# Driver loggers that log every request at INFO/DEBUG
_NOISY_LOGGERS = ('gremlinpython', 'opensearch', 'botocore', 'urllib3', 'aiohttp')


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once for the whole package.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logging.basicConfig(level=getattr(logging, config.log_level.upper()),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper()))
    return logger
