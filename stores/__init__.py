"""SQLite-backed stores for tasks, rankings and learned fixes."""

from stores.schemas import init_db
from stores.tasks import TaskStore
from stores.rankings import MethodPerformanceStore, ModelPerformanceStore
from stores.failure_memory import FailureMemory
from stores.learnings import LearningStore
from stores.difficulty import DifficultyStore

__all__ = [
    "init_db",
    "TaskStore",
    "MethodPerformanceStore",
    "ModelPerformanceStore",
    "FailureMemory",
    "LearningStore",
    "DifficultyStore",
]
