"""Logging setup for programs embedding stackkit."""

import logging


def setup_logging(verbose: bool = False, quiet: bool = False) -> int:
    """
    Configure the root logger by verbosity.

    Args:
        verbose: Debug output, prefixed with level and logger name
        quiet: Errors only

    Returns:
        The selected log level
    """
    if verbose:
        level = logging.DEBUG
        format_str = "%(levelname)s [%(name)s] %(message)s"
    elif quiet:
        level = logging.ERROR
        format_str = "%(levelname)s: %(message)s"
    else:
        level = logging.INFO
        format_str = "%(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        force=True,  # Reconfigure if already configured
    )
    return level


__all__ = ["setup_logging"]
