"""
Logging setup for npusim applications.

Library modules only create `logging.getLogger(__name__)` loggers. Scripts call
setup_logging() once to attach handlers to the `npusim` logger.

Usage:
    from npusim.log import LogConfig, setup_logging

    setup_logging(LogConfig(console_level=logging.DEBUG))
    setup_logging(LogConfig(output_dir=Path("runs/"), filename_prefix="mlp_4x4"))
"""

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "npusim"


@dataclass
class LogConfig:
    """Configuration for npusim logging."""

    # Output directory for log files (None: console only)
    output_dir: Optional[Path] = None

    # Log file is "{filename_prefix}.log"
    filename_prefix: Optional[str] = None

    console_level: int = logging.WARNING
    file_level: int = logging.DEBUG

    console_timestamps: bool = False
    file_timestamps: bool = True


def _formatter(timestamps: bool) -> logging.Formatter:
    if timestamps:
        return logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    return logging.Formatter("%(levelname)s %(name)s: %(message)s")


def setup_logging(config: Optional[LogConfig] = None) -> logging.Logger:
    """
    Attach console (stderr) and optional file handlers to the npusim logger.

    Calling it again replaces the handlers installed by the previous call.

    Returns:
        The configured `npusim` logger
    """
    config = config or LogConfig()
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(config.console_level)
    console.setFormatter(_formatter(config.console_timestamps))
    logger.addHandler(console)
    level = config.console_level

    if config.output_dir is not None and config.filename_prefix:
        output_dir = Path(config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(output_dir / f"{config.filename_prefix}.log", mode='w')
        file_handler.setLevel(config.file_level)
        file_handler.setFormatter(_formatter(config.file_timestamps))
        logger.addHandler(file_handler)
        level = min(level, config.file_level)

    logger.setLevel(level)
    logger.propagate = False
    return logger
