"""
Logging utilities for the sole-tenant placement history analyzer.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# Libraries that log every HTTP round trip at DEBUG.
NOISY_LOGGERS = ("urllib3", "google.auth")


def setup_logging(
    verbose: bool = False, log_file: str = "placement-history.log"
) -> logging.Logger:
    """
    Send log records to stdout and to a log file.

    Args:
        verbose: Log replay details at DEBUG instead of INFO
        log_file: File that receives a copy of the report

    Returns:
        Logger instance
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file),
        ],
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(__name__)
