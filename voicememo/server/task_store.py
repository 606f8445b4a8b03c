"""
Filesystem-based persistence for meeting tasks.

Each task gets a dedicated directory:
- ``task.json`` holds the serialized task record
- imported recordings are copied next to it, and transcoded outputs are
  written beside them by the pipeline
"""

import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import List, Optional

from ..pipeline.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore:
    """Stores task records as JSON files, one directory per task."""

    TASK_FILE = "task.json"

    def __init__(self, tasks_dir: str = "server_tasks"):
        """
        Initialize the task store.

        Args:
            tasks_dir: Directory to store all task directories
        """
        self.tasks_dir = Path(tasks_dir)
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def get_task_dir(self, task_id: str) -> Path:
        """Get the directory path for a task."""
        return self.tasks_dir / task_id

    def task_exists(self, task_id: str) -> bool:
        return (self.get_task_dir(task_id) / self.TASK_FILE).exists()

    def import_audio(self, task_id: str, source_path: str, filename: str) -> str:
        """
        Copy a recording into the task directory.

        Args:
            task_id: Task identifier
            source_path: Path of the recording to copy
            filename: Name to store it under

        Returns:
            Absolute path of the stored copy
        """
        task_dir = self.get_task_dir(task_id)
        task_dir.mkdir(parents=True, exist_ok=True)
        target_path = task_dir / filename
        shutil.copy2(source_path, target_path)
        return str(target_path.resolve())

    def save_task(self, task: Task) -> None:
        """Insert or replace the record for ``task.id``."""
        task_dir = self.get_task_dir(task.id)
        task_dir.mkdir(parents=True, exist_ok=True)
        file_path = task_dir / self.TASK_FILE
        tmp_path = task_dir / f"{self.TASK_FILE}.tmp"

        with self._lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(task.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, file_path)

    def load_task(self, task_id: str) -> Optional[Task]:
        """Load one task, or None if it does not exist or cannot be read."""
        file_path = self.get_task_dir(task_id) / self.TASK_FILE
        if not file_path.exists():
            return None

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return Task.from_dict(json.load(f))
        except (json.JSONDecodeError, IOError, KeyError, ValueError) as e:
            logger.error(f"Could not read task {task_id}: {e}")
            return None

    def load_tasks(self, status_filter: Optional[TaskStatus] = None, limit: int = 100) -> List[Task]:
        """
        List stored tasks.

        Args:
            status_filter: Only return tasks with this overall status
            limit: Maximum number of tasks to return

        Returns:
            Tasks sorted by creation time (newest first)
        """
        tasks = []
        for task_dir in self.tasks_dir.iterdir():
            if not task_dir.is_dir():
                continue

            task = self.load_task(task_dir.name)
            if not task:
                continue
            if status_filter and task.status is not status_filter:
                continue
            tasks.append(task)

        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[:limit]

    def delete_task(self, task_id: str) -> bool:
        """
        Delete a task and all its files.

        Returns:
            True if the task was deleted, False if it didn't exist
        """
        task_dir = self.get_task_dir(task_id)
        if not task_dir.exists():
            return False

        shutil.rmtree(task_dir)
        return True
