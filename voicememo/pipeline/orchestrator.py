"""
Pipeline orchestration for meeting transcription tasks.

``MeetingPipeline`` owns one task and drives it through the stage sequence:

- Mixed tasks run a single sequence against the mixed track.
- Separated tasks run one sequence per speaker concurrently, then fuse the
  speaker transcripts into the overall transcript.

Every stage transition is persisted. A failed stage records itself as the
resume point, so a later ``retry`` continues where the task stopped instead
of starting over.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from ..config import ConfigManager
from .models import SPEAKER_HEADINGS, SPEAKERS, Task, TaskMode, TaskStatus, Track
from .results import POLL_TIMEOUT, STAGE_FAILED, Done, Failed, FailureDomain, Pending
from .stages import PipelineContext, Stage, run_stage, select_stages

logger = logging.getLogger(__name__)


class SequenceOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class PipelineSettings:
    """Retry policy and naming knobs for the orchestrator."""

    max_poll_attempts: int = 60
    poll_interval: float = 2.0
    object_key_prefix: str = ""

    @classmethod
    def from_config(cls) -> "PipelineSettings":
        return cls(
            max_poll_attempts=ConfigManager.get_int("POLL_MAX_ATTEMPTS"),
            poll_interval=ConfigManager.get_float("POLL_INTERVAL"),
            object_key_prefix=ConfigManager.get("OBJECT_KEY_PREFIX"),
        )


def fuse_transcripts(transcripts: Dict[int, Optional[str]]) -> str:
    """
    Merge per-speaker transcripts into one labeled document.

    Only non-empty transcripts contribute a section; sections are always in
    speaker order, so fusing the same inputs twice gives the same text. The
    speaker 1 section ends with a blank line, the speaker 2 section does not.
    """
    fused = ""
    for speaker in SPEAKERS:
        text = transcripts.get(speaker) or ""
        if text:
            trailer = "\n\n" if speaker == SPEAKERS[0] else "\n"
            fused += f"### {SPEAKER_HEADINGS[speaker]}\n{text}{trailer}"
    return fused


def resume_point(status: Optional[TaskStatus], failed_step: Optional[TaskStatus]) -> TaskStatus:
    """Where a scope continues from: its failed step when failed, else its current status."""
    if status is TaskStatus.FAILED:
        return failed_step or TaskStatus.RECORDED
    return status or TaskStatus.RECORDED


class MeetingPipeline:
    """Runs a task's stage sequences and records every transition."""

    def __init__(
        self,
        task: Task,
        store,
        object_store,
        speech_client,
        transcoder,
        settings: Optional[PipelineSettings] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            task: Task to drive; the pipeline works on its own copy
            store: Persistence with a ``save_task(task)`` method
            object_store: Client with ``upload(local_path, key) -> url``
            speech_client: Client with ``create_task``, ``get_status`` and ``fetch_json``
            transcoder: Converter with ``convert(input_path, output_path) -> bool``
            settings: Retry policy; defaults are read from configuration
        """
        self.store = store
        self.object_store = object_store
        self.speech_client = speech_client
        self.transcoder = transcoder
        self.settings = settings or PipelineSettings.from_config()

        self._task = task.copy()
        # Serializes every write to the shared task record
        self._lock = threading.RLock()
        # Only one public action at a time
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()

        self._track_executor = ThreadPoolExecutor(max_workers=len(SPEAKERS), thread_name_prefix="track")
        self._persist_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="persist")

    @property
    def task(self) -> Task:
        """Snapshot of the current task state."""
        with self._lock:
            return self._task.copy()

    @property
    def is_processing(self) -> bool:
        return self._run_lock.locked()

    # Public actions

    def start(self) -> Task:
        """Continue the task from wherever its state says it left off."""
        return self._guarded(self._start)

    def run_from(self, step: TaskStatus, force: bool = False) -> Task:
        """
        Run the pipeline from a given step.

        In separated mode both speaker sequences start from ``step``.

        Args:
            step: Status to resume from
            force: Re-enter a completed track; only honored at ``polling``
        """
        return self._guarded(self._run_from, step, force)

    def check_again(self) -> Task:
        """Poll the remote task again, even when the task already completed."""
        return self.run_from(TaskStatus.POLLING, force=True)

    def retry(self, speaker: Optional[int] = None) -> Task:
        """
        Retry after a failure.

        Args:
            speaker: In separated mode, retry only this speaker and re-fuse;
                None retries everything that has not completed
        """
        return self._guarded(self._retry, speaker)

    def restart_from_beginning(self) -> Task:
        """Reset the task to ``recorded`` and run the whole pipeline again."""
        return self._guarded(self._restart)

    def fuse(self) -> Task:
        """Rebuild the overall transcript and status from the speaker tracks."""
        with self._lock:
            self._fuse_locked()
            return self._task.copy()

    def stop(self) -> None:
        """
        Ask the running action to stop after the current stage; wakes any polling wait.

        Only the action in flight is affected; the next action starts fresh.
        """
        logger.info(f"Stop requested for task {self._task.id}")
        self._stop_event.set()

    def flush(self) -> None:
        """Wait until all queued persistence writes have finished."""
        self._persist_executor.submit(lambda: None).result()

    def close(self) -> None:
        self.flush()
        self._track_executor.shutdown(wait=True)
        self._persist_executor.shutdown(wait=True)

    # Action bodies

    def _guarded(self, action, *args) -> Task:
        if not self._run_lock.acquire(blocking=False):
            logger.warning(f"Task {self._task.id} is already processing; ignoring request")
            return self.task
        self._stop_event.clear()
        try:
            action(*args)
        finally:
            self._run_lock.release()
        return self.task

    def _start(self) -> None:
        task = self.task
        if task.mode is TaskMode.MIXED:
            self._run_track(self._resume_point(task, None), None)
        else:
            starts = {spk: self._resume_point(task, spk) for spk in SPEAKERS}
            self._run_separated(starts)

    def _run_from(self, step: TaskStatus, force: bool) -> None:
        if self.task.mode is TaskMode.MIXED:
            self._run_track(step, None, force)
        else:
            self._run_separated({spk: step for spk in SPEAKERS}, force)

    def _retry(self, speaker: Optional[int]) -> None:
        task = self.task
        logger.info(f"Retry requested for task {task.id} (speaker={speaker})")

        if task.mode is TaskMode.MIXED:
            self._run_track(self._resume_point(task, None), None)
            return

        if speaker is not None:
            outcome = self._run_track(self._resume_point(task, speaker), speaker)
            if outcome is not SequenceOutcome.CANCELLED:
                self.fuse()
            return

        self._start()

    def _restart(self) -> None:
        logger.info(f"Restart from beginning for task {self._task.id}")
        with self._lock:
            task = self._task
            reset_tracks = {
                name: _reset_track(getattr(task, name), speaker_track=name != "mixed")
                for name in ("mixed", "speaker1", "speaker2")
            }
            self._task = replace(
                task,
                status=TaskStatus.RECORDED,
                failed_step=None,
                transcript=None,
                summary=None,
                last_error=None,
                raw_response=None,
                output_mp3_path=None,
                **reset_tracks,
            )
            self._persist_locked()
        self._start()

    # Sequence execution

    @staticmethod
    def _resume_point(task: Task, speaker: Optional[int]) -> TaskStatus:
        return resume_point(task.scope_status(speaker), task.scope_failed_step(speaker))

    def _run_separated(self, starts: Dict[int, TaskStatus], force: bool = False) -> Dict[int, SequenceOutcome]:
        futures = {spk: self._track_executor.submit(self._run_track, start, spk, force) for spk, start in starts.items()}
        outcomes = {spk: future.result() for spk, future in futures.items()}

        if SequenceOutcome.CANCELLED in outcomes.values():
            logger.info(f"Task {self._task.id} cancelled; fusion deferred")
        else:
            self.fuse()
        return outcomes

    def _run_track(self, start: TaskStatus, speaker: Optional[int], force: bool = False) -> SequenceOutcome:
        current = self.task.scope_status(speaker)
        if current is TaskStatus.COMPLETED and not (force and start is TaskStatus.POLLING):
            logger.info(f"Track {speaker or 'mixed'} of task {self._task.id} already completed; skipping")
            return SequenceOutcome.SKIPPED

        stages = select_stages(start, speaker)
        logger.info(f"Task {self._task.id}: running {[str(s) for s in stages]}")
        return self._execute(stages, speaker)

    def _execute(self, stages: List[Stage], speaker: Optional[int]) -> SequenceOutcome:
        for stage in stages:
            if self._stop_event.is_set():
                return SequenceOutcome.CANCELLED

            self._mark_running(stage)
            attempts = 0

            while True:
                result = self._run_stage_safely(stage)

                if isinstance(result, Pending):
                    attempts += 1
                    if attempts >= self.settings.max_poll_attempts:
                        self._mark_failed(stage, Failed(FailureDomain.PIPELINE, POLL_TIMEOUT, "Polling timeout"))
                        return SequenceOutcome.FAILED
                    logger.debug(f"{stage} still running (attempt {attempts}/{self.settings.max_poll_attempts})")
                    if self._stop_event.wait(self.settings.poll_interval):
                        return SequenceOutcome.CANCELLED
                    continue

                if isinstance(result, Failed):
                    self._mark_failed(stage, result)
                    return SequenceOutcome.FAILED

                self._apply(stage, result)
                break

        return SequenceOutcome.COMPLETED

    def _run_stage_safely(self, stage: Stage):
        context = PipelineContext(
            task=self.task,
            object_store=self.object_store,
            speech_client=self.speech_client,
            transcoder=self.transcoder,
            key_prefix=self.settings.object_key_prefix,
        )
        try:
            return run_stage(stage, context)
        except Exception as e:
            logger.exception(f"{stage} raised an unexpected error")
            return Failed(FailureDomain.PIPELINE, STAGE_FAILED, str(e))

    # State transitions

    def _mark_running(self, stage: Stage) -> None:
        with self._lock:
            self._set_scope(stage.speaker, stage.position, None)
            if stage.speaker is None:
                self._task.last_error = None
            self._persist_locked()

    def _apply(self, stage: Stage, result: Done) -> None:
        with self._lock:
            if stage.speaker is None:
                self._task = result.task.copy()
            else:
                updated = result.task.track(stage.speaker)
                self._task = self._task.with_track(stage.speaker, replace(updated))
            status = TaskStatus.COMPLETED if stage.position is TaskStatus.POLLING else stage.position
            self._set_scope(stage.speaker, status, None)
            self._persist_locked()
        logger.info(f"{stage} succeeded")

    def _mark_failed(self, stage: Stage, failure: Failed) -> None:
        message = f"{stage.label} failed: {failure.message}"
        logger.error(f"Task {self._task.id} {stage}: {message} ({failure.domain.value}/{failure.code})")
        with self._lock:
            track = self._task.track(stage.speaker)
            for name, value in failure.diagnostics.items():
                if value is not None:
                    setattr(track, name, value)
            self._set_scope(stage.speaker, TaskStatus.FAILED, stage.position)
            self._task.last_error = message
            self._persist_locked()

    def _set_scope(self, speaker: Optional[int], status: TaskStatus, failed_step: Optional[TaskStatus]) -> None:
        if speaker is None:
            self._task.status = status
            self._task.failed_step = failed_step
        else:
            track = self._task.track(speaker)
            track.status = status
            track.failed_step = failed_step

    def _fuse_locked(self) -> None:
        task = self._task
        transcripts = {spk: task.track(spk).transcript for spk in SPEAKERS}

        if any(transcripts.values()):
            task.transcript = fuse_transcripts(transcripts)
            task.status = TaskStatus.COMPLETED
            task.failed_step = None
        else:
            failed_steps = [
                task.track(spk).failed_step for spk in SPEAKERS if task.track(spk).status is TaskStatus.FAILED
            ]
            if failed_steps:
                task.status = TaskStatus.FAILED
                task.failed_step = min(failed_steps, key=lambda s: s.rank)
            elif all(task.track(spk).status is TaskStatus.COMPLETED for spk in SPEAKERS):
                task.transcript = ""
                task.status = TaskStatus.COMPLETED
                task.failed_step = None
            else:
                return

        logger.info(f"Fusion for task {task.id}: status={task.status.value}")
        self._persist_locked()

    # Persistence

    def _persist_locked(self) -> None:
        snapshot = self._task.copy()
        self._persist_executor.submit(self._save, snapshot)

    def _save(self, snapshot: Task) -> None:
        try:
            self.store.save_task(snapshot)
        except Exception:
            logger.exception(f"Failed to persist task {snapshot.id}")


def _reset_track(track: Track, speaker_track: bool) -> Track:
    return Track(
        audio_path=track.audio_path,
        status=TaskStatus.RECORDED if speaker_track else None,
    )
