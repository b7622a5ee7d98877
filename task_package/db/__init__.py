"""Persistence layer."""

from task_package.db.database import Database
from task_package.db.mode_store import ModeStore
from task_package.db.task_store import TaskStore

__all__ = ["Database", "ModeStore", "TaskStore"]
