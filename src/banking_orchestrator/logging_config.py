"""
Logging Configuration
Sets up file-based logging with separate log files for the orchestrator components
"""

import os
import logging
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

# Log format
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Max log file size (10MB)
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# Logger name -> log file name
COMPONENT_LOGGERS = {
    "banking_orchestrator.app": "app.log",
    "agent": "agent.log",
    "banking_orchestrator.tools": "tools.log",
    "banking_orchestrator.rag": "rag.log",
    "gemini_llm_client": "gemini_client.log",
}


def setup_file_logger(name: str, log_file: Path, level: int = logging.INFO) -> logging.Logger:
    """
    Set up a file-based logger with rotation

    Args:
        name: Logger name
        log_file: Path to log file
        level: Logging level

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    # Only warnings and errors reach the console
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def setup_logging(log_dir: Optional[str] = None, log_level: Optional[str] = None) -> Path:
    """
    Set up all loggers for the orchestrator. Returns the log directory used.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)

    for name, filename in COMPONENT_LOGGERS.items():
        setup_file_logger(name, directory / filename, level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    logging.getLogger("banking_orchestrator.app").info("Logging configured. Log files in: %s", directory)
    return directory


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance (creates if doesn't exist)
    """
    return logging.getLogger(name)
