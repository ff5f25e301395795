"""
Logging Setup module
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Get a configured logger"""
    logger = logging.getLogger(name)

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(formatter)

        logger.addHandler(console_handler)
        logger.setLevel(level)

    return logger


def setup_file_logging(
    name: str,
    log_file: Optional[Path] = None,
    level: Union[int, str] = logging.INFO
) -> logging.Logger:
    """Setup file logging"""
    logger = logging.getLogger(name)

    if log_file is None:
        log_dir = Path.home() / '.config' / 'vpn-session' / 'logs'
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'vpn_session.log'
    else:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)

    formatter = logging.Formatter(
        (
            '%(asctime)s - %(name)s - %(levelname)s - '
            '%(funcName)s:%(lineno)d - %(message)s'
        )
    )
    file_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.setLevel(level)

    return logger


def set_logging_level(level: str = "INFO"):
    """Set logging level for all loggers"""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
