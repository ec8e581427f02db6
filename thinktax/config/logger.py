"""
Logging setup.

Verbosity is decided once at process start; every module asks for a named
logger under the ``thinktax`` hierarchy.
"""

import logging
import os
import sys

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbose: bool = False) -> None:
    """Configure the ``thinktax`` logger hierarchy.

    Args:
        verbose: Emit DEBUG records when True, otherwise WARNING and above.
            ``THINKTAX_LOG_LEVEL`` overrides both.
    """
    default_level = "DEBUG" if verbose else "WARNING"
    log_level = os.getenv("THINKTAX_LOG_LEVEL", default_level).upper()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("thinktax")
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level, logging.WARNING))
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
