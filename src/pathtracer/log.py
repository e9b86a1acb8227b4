"""Logging configuration for command-line use.

Library modules only create loggers with ``logging.getLogger(__name__)``;
handlers are installed here, once, by the CLI.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbosity: int = 0) -> None:
    """Install a stream handler on the ``pathtracer`` logger.

    Args:
        verbosity: 0 logs warnings, 1 adds progress (INFO), 2 or more adds
            DEBUG output.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    root = logging.getLogger("pathtracer")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)
    root.propagate = False
