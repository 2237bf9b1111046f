"""
Logging configuration with rotation and multiple handlers
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional
from config import settings


def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """Get configured logger instance with rotation"""
    logger = logging.getLogger(name)

    log_level = getattr(logging, str(settings.get('log_level', 'INFO')).upper(), logging.INFO)
    logger.setLevel(log_level)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    log_dir = Path(settings.get('log_dir', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # File format - more detailed
    file_format = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = RotatingFileHandler(
        log_dir / (log_file or settings.get('log_file', 'rollout_controller.log')),
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_format)

    # Rollback step failures and collaborator errors land here too
    error_handler = RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.addHandler(error_handler)

    logger.propagate = False

    return logger


def configure_root_logger():
    """Configure the root logger for third-party libraries"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)

    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(handler)


configure_root_logger()
