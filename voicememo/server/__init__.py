"""
HTTP service, task persistence and background processing for voicememo.
"""

from .processing_queue import ProcessingQueue
from .task_store import TaskStore

__all__ = ["ProcessingQueue", "TaskStore"]
