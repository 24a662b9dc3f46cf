"""Console output."""

from .console import ConsoleManager, ConsoleObserver

__all__ = ["ConsoleManager", "ConsoleObserver"]
