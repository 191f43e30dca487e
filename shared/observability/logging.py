"""Logging setup for the weighting engine."""

import logging
import sys

from shared.config import Environment, WeightingSettings


def setup_logging(config: WeightingSettings | None = None) -> None:
    """Set up logging configuration."""
    if config is None:
        config = WeightingSettings()

    # Configure log level based on environment
    if config.log_level is not None:
        log_level = getattr(logging, config.log_level)
    elif config.environment == Environment.DEVELOPMENT:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # joblib workers are chatty at debug level
    logging.getLogger("joblib").setLevel(
        logging.INFO
        if config.environment == Environment.DEVELOPMENT
        else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
