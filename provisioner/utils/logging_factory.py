"""Centralized logging factory for consistent logger creation across the application.

This module provides a singleton-based logging factory that ensures consistent
logger configuration throughout the application. It handles:
- One-time initialization of the root logger (file + console)
- Per-run transcript files capturing a single workflow run
- Verbosity control for the ``provisioner`` package

Usage:
    LoggingFactory.initialize(log_dir=Path("logs"), level=logging.INFO)
    logger = LoggingFactory.get_logger(__name__)

    with LoggingFactory.transcript("contoso-web") as path:
        ...  # everything logged here is also written to ``path``
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from .paths import sanitize_name

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _log_dir: Directory path where log files are stored
        _transcripts: Open transcript handlers keyed by transcript path
    """

    _initialized = False
    _log_dir = Path("logs")
    _format = DEFAULT_FORMAT
    _transcripts: Dict[Path, logging.Handler] = {}

    @classmethod
    def initialize(
        cls,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        format_string: Optional[str] = None,
        console: bool = True,
    ) -> None:
        """Initialize the logging system once for the entire application.

        Only the first call has an effect. The root logger gets a file handler
        writing ``provisioner.log`` in ``log_dir`` and, unless ``console`` is
        False, a stream handler.

        Args:
            log_dir: Directory for log files. If None, uses "logs" in current directory.
            level: Default logging level for root logger
            format_string: Custom format string for log messages
            console: Also log to stderr
        """
        if cls._initialized:
            return

        if log_dir:
            cls._log_dir = Path(log_dir)
        cls._log_dir.mkdir(parents=True, exist_ok=True)

        if format_string:
            cls._format = format_string

        handlers: list[logging.Handler] = [logging.FileHandler(cls._log_dir / "provisioner.log")]
        if console:
            handlers.append(logging.StreamHandler())

        root = logging.getLogger()
        formatter = logging.Formatter(cls._format)
        for handler in handlers:
            handler.setFormatter(formatter)
            root.addHandler(handler)
        root.setLevel(level)
        logging.getLogger("provisioner").setLevel(level)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a configured logger, initializing with defaults on first use."""
        if not cls._initialized:
            cls.initialize()

        return logging.getLogger(name)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """Switch the root and package loggers between DEBUG and INFO."""
        level = logging.DEBUG if verbose else logging.INFO

        logging.getLogger().setLevel(level)
        logging.getLogger("provisioner").setLevel(level)

    @classmethod
    def start_transcript(cls, instance_id: str, log_dir: Optional[Path] = None) -> Path:
        """Open a transcript file for one workflow run.

        Args:
            instance_id: Workflow instance the transcript belongs to
            log_dir: Override directory; defaults to the factory log directory

        Returns:
            Path of the transcript file
        """
        directory = Path(log_dir) if log_dir else cls._log_dir
        directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        path = directory / f"{sanitize_name(instance_id)}-{stamp}.log"

        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(cls._format))
        handler.setLevel(logging.DEBUG)
        logging.getLogger("provisioner").addHandler(handler)
        cls._transcripts[path] = handler
        return path

    @classmethod
    def stop_transcript(cls, path: Path) -> None:
        """Detach and close a transcript opened with start_transcript."""
        handler = cls._transcripts.pop(Path(path), None)
        if handler is None:
            return
        logging.getLogger("provisioner").removeHandler(handler)
        handler.close()

    @classmethod
    @contextmanager
    def transcript(cls, instance_id: str, log_dir: Optional[Path] = None) -> Iterator[Path]:
        """Context manager wrapping start_transcript/stop_transcript."""
        path = cls.start_transcript(instance_id, log_dir)
        try:
            yield path
        finally:
            cls.stop_transcript(path)


def get_logger(name: str) -> logging.Logger:
    """Convenience wrapper around LoggingFactory.get_logger."""
    return LoggingFactory.get_logger(name)
