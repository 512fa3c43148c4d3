"""
Neutra Logging System
=====================

A unified, thread-safe logging utility for the batch engine. This module
integrates with the standard Python `logging` library and the `rich` library
to provide structured, safe, and visually distinct logging outputs.

Usage:
    >>> from neutra.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Round 3 confirmed")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
)


# Define log file location relative to the project root
PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "neutra.log"


class LogManager:
    """
    Manages logging configuration via the Singleton pattern.

    This class ensures that the logging subsystem is initialized exactly once.
    It handles the setup of 'Rich' console and rotating file handlers for
    persistent storage.

    Attributes:
        _instance (LogManager): The singleton instance.
        _lock (threading.Lock): Thread lock for atomic initialization.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()


    def __new__(cls) -> "LogManager":
        """Creates or returns the existing singleton instance."""
        # Double-checked locking pattern for thread-safe singleton initialization
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance


    def __init__(self) -> None:
        """Initializes the LogManager instance."""
        if self._initialized:
            return
        self._configured = False
        self._initialized = True


    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True,
    ) -> None:
        """
        Configures the root logger with console and file handlers.

        Args:
            log_level (Optional[str]): Logging level (DEBUG, INFO, etc.). Defaults to env var.
            log_file (Optional[Path]): Absolute path to log file. Defaults to `logs/neutra.log`.
            console_output (bool): Enable stdout logging. Defaults to True.
            file_output (bool): Enable rotating file logging. Defaults to True.
        """
        with self._lock:
            if self._configured:
                return

            level_str = log_level or LOG_LEVEL
            numeric_level = getattr(logging, str(level_str).upper(), logging.INFO)

            root_logger = logging.getLogger()
            root_logger.setLevel(numeric_level)

            for lib in ["aiosqlite", "asyncio"]:
                logging.getLogger(lib).setLevel(logging.WARNING)

            root_logger.handlers.clear()

            log_format = str(LOG_FORMAT)
            date_format = str(LOG_DATE_FORMAT)

            # Uses UTC for consistency across different server timezones
            file_formatter = TerminalSafeFormatter(fmt=log_format, datefmt=date_format + " UTC")
            file_formatter.converter = time.gmtime

            if console_output:
                if LOG_CONSOLE_HIGHLIGHTING:
                    neutra_theme = Theme(
                        {
                            "neutra.address":         "cyan",
                            "neutra.amount":          "bold white",
                            "neutra.level_critical":  "bold red reverse",
                            "neutra.level_debug":     "bold dim",
                            "neutra.level_error":     "bold red",
                            "neutra.level_info":      "bold green",
                            "neutra.level_warning":   "bold yellow",
                            "neutra.logger_name":     "magenta",
                            "neutra.locked":          "bold red",
                            "neutra.round":           "bold cyan",
                            "neutra.side":            "bold magenta",
                            "neutra.tag":             "bold magenta",
                            "neutra.timestamp":       "bold cyan",
                        }
                    )

                    console = Console(theme=neutra_theme, highlight=False)

                    rich_handler = RichHandler(
                        console=console,
                        highlighter=NeutraLogHighlighter(),
                        keywords=[],
                        rich_tracebacks=True,
                        omit_repeated_times=False,
                        show_path=False,
                        enable_link_path=True,
                        show_time=False,
                        show_level=False,
                        markup=False,
                    )
                    rich_handler.setLevel(numeric_level)
                    rich_handler.setFormatter(file_formatter)
                    root_logger.addHandler(rich_handler)
                else:
                    console_handler = logging.StreamHandler(sys.stdout)
                    console_handler.setLevel(numeric_level)
                    console_handler.setFormatter(file_formatter)
                    root_logger.addHandler(console_handler)

            if file_output:
                log_file_path = log_file or LOG_FILE_PATH
                log_file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.handlers.RotatingFileHandler(
                    filename=str(log_file_path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )

                file_handler.setLevel(numeric_level)
                file_handler.setFormatter(file_formatter)
                root_logger.addHandler(file_handler)

            self._configured = True


    def reconfigure(self, **kwargs) -> None:
        """Drop the current handlers and configure again (e.g. after loading config.toml)."""
        with self._lock:
            self._configured = False
        self.configure(**kwargs)


    def get_logger(self, name: str) -> logging.Logger:
        """
        Retrieves a configured logger instance for a specific module.

        Args:
            name (str): The name of the logger (typically `__name__`).

        Returns:
            logging.Logger: A configured standard Python logger.
        """
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


class TerminalSafeFormatter(logging.Formatter):
    """
    A formatter class that sanitizes log output.

    Participant addresses and instruction payloads reach the log verbatim,
    so ANSI escape sequences and non-printable control characters are
    stripped before anything is written to a terminal or file.
    """

    # Matches ANSI CSI sequences (colors, cursor moves) and single ESC chars
    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Matches control chars (0x00-0x1F) excluding Tab and Newline
    _control_chars_re = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
    _carriage_return_re = re.compile(r"\r")


    @classmethod
    def sanitize(cls, text: str) -> str:
        """
        Removes potentially dangerous characters from the provided text.

        Args:
            text (str): The raw log message.

        Returns:
            str: The sanitized message safe for terminal output.
        """
        if not text:
            return text
        text = cls._ansi_escape_re.sub("", text)
        text = cls._carriage_return_re.sub("", text)
        text = cls._control_chars_re.sub("", text)
        return text


    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class NeutraLogHighlighter(RegexHighlighter):
    """Rich highlighter for batch engine logs: sides, rounds, addresses, levels."""

    base_style = "neutra."
    highlights = [
        r"(?P<address>\b0x[0-9a-fA-F]{40}\b)",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<locked>batch under execution)",
        r"(?P<round>\bround[ =#]\d+\b)",
        r"(?P<side>\b(deposit|withdraw)\b)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


_manager = LogManager()

def get_logger(name: str) -> logging.Logger:
    """
    Public accessor of the logging system.
    Delegates to the Singleton LogManager, ensuring configuration is applied.

    Args:
        name (str): The name of the module requesting the logger.

    Returns:
        logging.Logger: The configured logger instance.
    """
    return _manager.get_logger(name)

# Auto-configure on import to ensure immediate availability
_manager.configure()
