"""
Logging helpers for the KYC Case Pipeline

Sets up the root logger from the ``logging`` section of config.yaml and
provides sanitization for user-supplied text (company names, search
queries, notes) before it is written to a log line.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig


def sanitize_for_logging(text, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Truncate to this many characters

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length]


def configure_logging(
    config: Optional[LoggingConfig] = None,
    enable_file: bool = True
) -> logging.Logger:
    """Configure root logging handlers

    Args:
        config: Logging section of the configuration (defaults if omitted)
        enable_file: Also write to config.file

    Returns:
        The configured root logger
    """
    config = config or LoggingConfig()
    level = getattr(logging, str(config.level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if enable_file and config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root
