"""
Logging setup for the order service.

Protocol steps, compensations and the reconciliation sweep all log through the
root logger, prefixed with ``[Order: <id>]`` so one order can be followed
across request threads and the background sweeper. Compensations that may
leave stock unaccounted for are logged at CRITICAL.
"""

import logging
import sys

from .config import LOG_FILE


def setup_logging():
    """
    Sends INFO and above to LOG_FILE and to stdout.

    The PID in the format tells apart workers of a multi-process deployment.
    pika and httpx are held at WARNING so broker heartbeats and per-request
    inventory calls do not drown out order lines.
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )

    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name):
    return logging.getLogger(name)
