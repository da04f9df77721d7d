"""Edit history, undo/redo and edit sessions."""

from .types import EditState, HistoryEntry, UndoAction
from .manager import HistoryManager
from .session import EditSession

__all__ = [
    "EditState",
    "HistoryEntry",
    "UndoAction",
    "HistoryManager",
    "EditSession",
]
