"""Logging setup for the tfxref command line."""
import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_LEVEL = "WARNING"


def setup_logging(level: str | None = None, format_string: str | None = None) -> None:
    """
    Configure root logging.

    Level comes from the argument, then TFXREF_LOG_LEVEL, then WARNING.
    Records go to stderr so JSON on stdout stays parseable.
    """
    log_level = level or os.getenv("TFXREF_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    numeric_level = getattr(logging, log_level.upper(), logging.WARNING)

    logging.basicConfig(
        level=numeric_level,
        format=format_string or LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    logging.getLogger(__name__).debug("Logging configured with level: %s", log_level)
