"""
Pipeline stages: transcode, upload, create remote task, poll.

Every stage reads a private copy of the task from its context, calls one
leaf client and returns a stage result. A stage never touches the live task;
the orchestrator merges successful results.
"""

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..client.speech_api import RemoteTaskStatus
from ..errors import TransportError
from .models import Task, TaskStatus, track_name
from .normalizer import build_transcript_text
from .results import MISSING_INPUT, STAGE_FAILED, Done, Failed, FailureDomain, Pending, StageResult

logger = logging.getLogger(__name__)


class StageKind(Enum):
    """Stage variants; the value is the pipeline position each one declares."""

    TRANSCODE = TaskStatus.TRANSCODING
    UPLOAD = TaskStatus.UPLOADING
    CREATE_TASK = TaskStatus.CREATED
    POLL = TaskStatus.POLLING


CANONICAL_SEQUENCE = [StageKind.TRANSCODE, StageKind.UPLOAD, StageKind.CREATE_TASK, StageKind.POLL]

STAGE_LABELS = {
    StageKind.TRANSCODE: "Transcode",
    StageKind.UPLOAD: "Upload",
    StageKind.CREATE_TASK: "Create task",
    StageKind.POLL: "Poll",
}


@dataclass(frozen=True)
class Stage:
    kind: StageKind
    speaker: Optional[int] = None  # None for the mixed track

    @property
    def position(self) -> TaskStatus:
        return self.kind.value

    @property
    def label(self) -> str:
        return STAGE_LABELS[self.kind]

    def __str__(self) -> str:
        return f"{self.label}[{track_name(self.speaker)}]"


@dataclass
class PipelineContext:
    """Everything a stage may read: a task snapshot and the leaf clients."""

    task: Task
    object_store: Any
    speech_client: Any
    transcoder: Any
    key_prefix: str = ""


def select_stages(start: TaskStatus, speaker: Optional[int] = None) -> List[Stage]:
    """
    Select the stages needed to continue from ``start``.

    Returns the shortest suffix of the canonical sequence whose first stage's
    position is at or beyond ``start``. A completed scope needs no stages; a
    failed scope without a resume point starts over.
    """
    if start is TaskStatus.FAILED:
        start = TaskStatus.RECORDED
    for index, kind in enumerate(CANONICAL_SEQUENCE):
        if kind.value.rank >= start.rank:
            return [Stage(k, speaker) for k in CANONICAL_SEQUENCE[index:]]
    return []


def object_key(prefix: str, task: Task, speaker: Optional[int]) -> str:
    """Deterministic object key: ``<prefix>YYYY/MM/DD/<recording_id>/<track>.m4a``."""
    return f"{prefix}{task.created_at:%Y/%m/%d}/{task.recording_id}/{track_name(speaker)}.m4a"


def run_stage(stage: Stage, context: PipelineContext) -> StageResult:
    """Run one stage against a context."""
    logger.info(f"{stage} start (task {context.task.id})")
    return _RUNNERS[stage.kind](stage, context)


def _transcode(stage: Stage, context: PipelineContext) -> StageResult:
    task = context.task.copy()
    track = task.track(stage.speaker)

    source = track.audio_path
    if not source:
        return Failed(FailureDomain.PIPELINE, MISSING_INPUT, "Input file path missing")

    source_path = Path(source)
    output_path = source_path.with_name(f"{track_name(stage.speaker)}_48k.m4a")

    try:
        size = source_path.stat().st_size
    except OSError as e:
        return Failed(FailureDomain.PIPELINE, STAGE_FAILED, f"Cannot access input file {source_path.name}: {e}")
    if size == 0:
        return Failed(FailureDomain.PIPELINE, STAGE_FAILED, f"Input file {source_path.name} is empty (0 bytes)")
    if not os.access(source_path, os.R_OK):
        return Failed(FailureDomain.PIPELINE, STAGE_FAILED, f"Input file {source_path.name} is not readable")

    if not context.transcoder.convert(str(source_path), str(output_path)):
        return Failed(FailureDomain.PIPELINE, STAGE_FAILED, "Transcode failed")

    track.audio_path = str(output_path)
    if stage.speaker is None:
        task.local_file_path = str(output_path)
    return Done(task)


def _upload(stage: Stage, context: PipelineContext) -> StageResult:
    task = context.task.copy()
    track = task.track(stage.speaker)

    if not track.audio_path:
        return Failed(FailureDomain.PIPELINE, MISSING_INPUT, f"{track_name(stage.speaker)} audio path missing")

    key = object_key(context.key_prefix, task, stage.speaker)
    try:
        url = context.object_store.upload(track.audio_path, key)
    except TransportError as e:
        return Failed(FailureDomain.TRANSPORT, e.code, str(e))

    logger.info(f"{stage} uploaded to {key}")
    track.object_url = url
    return Done(task)


def _create_task(stage: Stage, context: PipelineContext) -> StageResult:
    task = context.task.copy()
    track = task.track(stage.speaker)

    if not track.object_url:
        return Failed(FailureDomain.PIPELINE, MISSING_INPUT, "Object URL missing")

    try:
        remote_task_id = context.speech_client.create_task(track.object_url, summarize=stage.speaker is None)
    except TransportError as e:
        return Failed(FailureDomain.TRANSPORT, e.code, str(e))

    logger.info(f"{stage} created remote task {remote_task_id}")
    track.remote_task_id = remote_task_id
    return Done(task)


def _poll(stage: Stage, context: PipelineContext) -> StageResult:
    task = context.task.copy()
    track = task.track(stage.speaker)

    if not track.remote_task_id:
        return Failed(FailureDomain.PIPELINE, MISSING_INPUT, "Remote task ID missing")

    try:
        status, payload = context.speech_client.get_status(track.remote_task_id)
    except TransportError as e:
        return Failed(FailureDomain.TRANSPORT, e.code, str(e))

    logger.debug(f"{stage} remote status: {status.value}")
    payload = payload or {}

    if status is RemoteTaskStatus.RUNNING:
        return Pending()

    diagnostics = {
        "task_key": payload.get("TaskKey"),
        "api_status": payload.get("TaskStatus"),
        "status_text": payload.get("StatusText"),
    }

    if status is RemoteTaskStatus.FAILED:
        reason = diagnostics["status_text"] or "Unknown"
        return Failed(FailureDomain.REMOTE, STAGE_FAILED, f"Cloud task failed: {reason}", diagnostics)

    for name, value in diagnostics.items():
        if value is not None:
            setattr(track, name, value)
    if isinstance(payload.get("BizDuration"), int):
        track.duration = payload["BizDuration"]

    result = payload.get("Result")
    if not isinstance(result, dict):
        logger.warning(f"{stage} succeeded without a result object")
        return Done(task)

    transcript = _fetch_transcript(result, context.speech_client)
    track.transcript = transcript

    if stage.speaker is None:
        task.transcript = transcript
        task.raw_response = json.dumps(payload, ensure_ascii=False, indent=2)
        if isinstance(result.get("OutputMp3Path"), str):
            task.output_mp3_path = result["OutputMp3Path"]
        summary = _fetch_summary(result, context.speech_client)
        if summary:
            task.summary = summary

    return Done(task)


def _fetch_transcript(result: Dict[str, Any], speech_client) -> str:
    """Normalize the transcription artifact, downloading it when the result only links to it."""
    transcription = result.get("Transcription")
    if isinstance(transcription, str):
        try:
            text = build_transcript_text(speech_client.fetch_json(transcription))
        except TransportError as e:
            logger.warning(f"Failed to download transcription: {e}")
            text = ""
        if text:
            return text
    # Inline forms: a Transcription object, or Paragraphs/Sentences/Transcript on the result itself
    return build_transcript_text(result)


def _fetch_summary(result: Dict[str, Any], speech_client) -> Optional[str]:
    """Best-effort summary extraction; failures are logged and yield None."""
    summarization = result.get("Summarization")
    if isinstance(summarization, str):
        try:
            summarization = speech_client.fetch_json(summarization)
        except TransportError as e:
            logger.warning(f"Failed to download summarization: {e}")
            return None
    if not isinstance(summarization, dict):
        return None

    # The artifact wraps its content in a "Summarization" object
    body = summarization.get("Summarization", summarization)
    if not isinstance(body, dict):
        return None

    parts = [body.get("ParagraphTitle"), body.get("ParagraphSummary")]
    parts = [part for part in parts if isinstance(part, str) and part]
    return "\n\n".join(parts) if parts else None


_RUNNERS: Dict[StageKind, Callable[[Stage, PipelineContext], StageResult]] = {
    StageKind.TRANSCODE: _transcode,
    StageKind.UPLOAD: _upload,
    StageKind.CREATE_TASK: _create_task,
    StageKind.POLL: _poll,
}
