"""User-facing interfaces."""

from .cli import TaskCLI

__all__ = ["TaskCLI"]
