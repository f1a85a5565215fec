"""
podsplit Logging Configuration

Provides consistent logging setup for the split and pipeline commands.

Usage:
    from podsplit.logging_config import setup_logging, get_logger

    # In main script
    setup_logging(verbose=args.verbose, quiet=args.quiet)
    logger = get_logger(__name__)

    logger.info("Chunk 003 verified")
    logger.warning("Chunk 004 count mismatch")
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

# Log format strings
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
CONSOLE_FORMAT_VERBOSE = "%(asctime)s %(name)s %(levelname)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"

ROOT_LOGGER = "podsplit"


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    debug: bool = False,
    log_file: Optional[Path] = None,
    name: str = ROOT_LOGGER
) -> logging.Logger:
    """
    Configure logging for podsplit tools.

    Args:
        verbose: Show INFO and above on console
        quiet: Only show WARNING and above
        debug: Show DEBUG and above (overrides verbose)
        log_file: Optional file to write logs to
        name: Logger name (default: "podsplit")

    Returns:
        Configured package logger
    """
    # Batch jobs log progress by default; SLURM captures stderr to the .err file
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    elif verbose or os.environ.get("SLURM_JOB_ID"):
        level = logging.INFO
    else:
        level = logging.WARNING

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level
    logger.propagate = False

    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)

    if debug or verbose:
        console_formatter = logging.Formatter(CONSOLE_FORMAT_VERBOSE, datefmt="%H:%M:%S")
    else:
        console_formatter = logging.Formatter(CONSOLE_FORMAT)

    console.setFormatter(console_formatter)
    logger.addHandler(console)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always capture everything to file
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance under the podsplit namespace
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def add_logging_args(parser) -> None:
    """
    Add standard logging arguments to an argument parser.

    Usage:
        parser = argparse.ArgumentParser()
        add_logging_args(parser)
        args = parser.parse_args()
        setup_logging(verbose=args.verbose, quiet=args.quiet, debug=args.debug)
    """
    log_group = parser.add_argument_group("logging")
    log_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show progress for every chunk"
    )
    log_group.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Show only warnings and errors"
    )
    log_group.add_argument(
        "--debug",
        action="store_true",
        help="Show debug output, including tool command lines"
    )
    log_group.add_argument(
        "--log-file",
        type=Path,
        help="Write a full debug log to FILE"
    )
