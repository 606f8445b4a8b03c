"""
Background execution of pipeline actions using ThreadPoolExecutor.

Each submitted action (start, retry, restart, check, run_from) gets its own
``MeetingPipeline`` and runs on the worker pool. At most one action per task
is in flight; the pipeline is closed when its action finishes.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from ..audio import AudioTranscoder
from ..client import SpeechTaskClient, build_object_store
from ..pipeline.models import Task
from ..pipeline.orchestrator import MeetingPipeline, PipelineSettings
from .task_store import TaskStore

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[Task, TaskStore], MeetingPipeline]

ACTIONS = ("start", "retry", "restart", "check", "run_from")


def build_pipeline_factory() -> PipelineFactory:
    """Create a factory that wires pipelines to the clients described by configuration."""
    object_store = build_object_store()
    speech_client = SpeechTaskClient.from_config()
    transcoder = AudioTranscoder.from_config()
    settings = PipelineSettings.from_config()

    def factory(task: Task, store: TaskStore) -> MeetingPipeline:
        return MeetingPipeline(task, store, object_store, speech_client, transcoder, settings)

    return factory


class ProcessingQueue:
    """Runs pipeline actions for stored tasks on a worker pool."""

    def __init__(self, store: TaskStore, pipeline_factory: Optional[PipelineFactory] = None, max_workers: int = 2):
        """
        Initialize the processing queue.

        Args:
            store: TaskStore the pipelines load from and persist to
            pipeline_factory: Builds a pipeline for a task; defaults to one wired from configuration
            max_workers: Maximum number of concurrent actions
        """
        self.store = store
        self.pipeline_factory = pipeline_factory or build_pipeline_factory()
        self.max_workers = max_workers

        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline")
        self.running_tasks: Dict[str, Tuple[Future, MeetingPipeline]] = {}
        self.is_running = False

        # Lock for thread safety
        self._lock = threading.Lock()

    def start(self):
        """Start accepting actions."""
        if self.is_running:
            logger.warning("Processing queue is already running")
            return

        self.is_running = True
        logger.info(f"Processing queue started with {self.max_workers} workers")

    def stop(self):
        """Stop every running pipeline and shut the worker pool down."""
        if not self.is_running:
            return

        logger.info("Stopping processing queue...")
        self.is_running = False

        with self._lock:
            running = list(self.running_tasks.items())
        for task_id, (future, pipeline) in running:
            if not future.cancel():
                logger.info(f"Stopping task {task_id}")
                pipeline.stop()

        self.executor.shutdown(wait=True)
        logger.info("Processing queue stopped")

    def submit(self, task_id: str, action: str = "start", **kwargs: Any) -> bool:
        """
        Run a pipeline action for a task in the background.

        Args:
            task_id: Task identifier
            action: One of ``ACTIONS``
            **kwargs: ``speaker`` for retry, ``step`` for run_from

        Returns:
            True if the action was submitted, False if the queue is stopped,
            the task does not exist or an action for it is already running
        """
        if action not in ACTIONS:
            raise ValueError(f"Unknown action: {action}")

        if not self.is_running:
            logger.error("Cannot submit action: processing queue is not running")
            return False

        with self._lock:
            if task_id in self.running_tasks:
                logger.warning(f"Task {task_id} is already running")
                return False

            task = self.store.load_task(task_id)
            if not task:
                logger.error(f"Task {task_id} not found")
                return False

            pipeline = self.pipeline_factory(task, self.store)
            future = self.executor.submit(self._run_action, pipeline, action, kwargs)
            self.running_tasks[task_id] = (future, pipeline)

        logger.info(f"Task {task_id}: {action} submitted")
        future.add_done_callback(lambda f, tid=task_id: self._action_completed(tid, f))
        return True

    def is_task_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self.running_tasks

    def stop_task(self, task_id: str) -> bool:
        """
        Stop the action running for a task.

        Returns:
            True if an action was running and has been told to stop
        """
        with self._lock:
            entry = self.running_tasks.get(task_id)
        if not entry:
            return False

        future, pipeline = entry
        if not future.cancel():
            pipeline.stop()
        return True

    def get_queue_status(self) -> Dict[str, Any]:
        """Get status information about the processing queue."""
        with self._lock:
            running_tasks = list(self.running_tasks.keys())

        return {
            "is_running": self.is_running,
            "running_tasks": running_tasks,
            "max_workers": self.max_workers,
        }

    def _run_action(self, pipeline: MeetingPipeline, action: str, kwargs: Dict[str, Any]) -> Task:
        if action == "retry":
            return pipeline.retry(speaker=kwargs.get("speaker"))
        if action == "restart":
            return pipeline.restart_from_beginning()
        if action == "check":
            return pipeline.check_again()
        if action == "run_from":
            return pipeline.run_from(kwargs["step"])
        return pipeline.start()

    def _action_completed(self, task_id: str, future: Future):
        """Callback called when an action finishes."""
        with self._lock:
            entry = self.running_tasks.get(task_id)

        # Pending writes land before the task is reported idle
        if entry:
            entry[1].close()
        with self._lock:
            self.running_tasks.pop(task_id, None)

        if future.cancelled():
            logger.info(f"Task {task_id} was cancelled")
        elif future.exception():
            logger.error(f"Task {task_id} action failed with error: {future.exception()}")
        else:
            logger.info(f"Task {task_id} action finished with status {future.result().status.value}")
