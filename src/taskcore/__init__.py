"""Local task data store with validation, edit history and conflict resolution."""

__version__ = "0.1.0"
