"""
Data models for meeting transcription tasks.

A task is the durable record of one recording moving through the pipeline.
Mixed-mode tasks carry a single track; separated-mode tasks carry one track
per speaker and derive the overall status and transcript from them.
"""

import copy
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TaskStatus(Enum):
    """Processing status of a task or of one speaker track."""

    RECORDED = "recorded"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    CREATED = "created"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the status progression; FAILED sits outside it and ranks -1."""
        if self is TaskStatus.FAILED:
            return -1
        return STATUS_ORDER.index(self)


STATUS_ORDER = [
    TaskStatus.RECORDED,
    TaskStatus.TRANSCODING,
    TaskStatus.TRANSCODED,
    TaskStatus.UPLOADING,
    TaskStatus.UPLOADED,
    TaskStatus.CREATED,
    TaskStatus.POLLING,
    TaskStatus.COMPLETED,
]


class TaskMode(Enum):
    MIXED = "mixed"
    SEPARATED = "separated"


SPEAKERS = (1, 2)

SPEAKER_HEADINGS = {
    1: "Speaker 1 (Local)",
    2: "Speaker 2 (Remote)",
}


def track_name(speaker: Optional[int]) -> str:
    """Name used for files and object keys of a track."""
    return "mixed" if speaker is None else f"speaker{speaker}"


@dataclass
class Track:
    """
    One independently processed audio source.

    ``status`` and ``failed_step`` are tracked for the speaker tracks only;
    the mixed track reports through the task's overall fields.
    """

    audio_path: Optional[str] = None
    object_url: Optional[str] = None
    remote_task_id: Optional[str] = None
    transcript: Optional[str] = None
    status: Optional[TaskStatus] = None
    failed_step: Optional[TaskStatus] = None
    # Backend diagnostics
    task_key: Optional[str] = None
    api_status: Optional[str] = None
    status_text: Optional[str] = None
    duration: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["status"] = self.status.value if self.status else None
        data["failed_step"] = self.failed_step.value if self.failed_step else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Track":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = _status_or_none(values.get("status"))
        values["failed_step"] = _status_or_none(values.get("failed_step"))
        return cls(**values)


@dataclass
class Task:
    """Durable record of one recording moving through the pipeline."""

    recording_id: str
    mode: TaskMode = TaskMode.MIXED
    title: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    # Single-track path kept for older single-file records
    local_file_path: Optional[str] = None
    mixed: Track = field(default_factory=Track)
    speaker1: Track = field(default_factory=Track)
    speaker2: Track = field(default_factory=Track)
    status: TaskStatus = TaskStatus.RECORDED
    failed_step: Optional[TaskStatus] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    last_error: Optional[str] = None
    raw_response: Optional[str] = None
    output_mp3_path: Optional[str] = None

    @classmethod
    def for_mixed(cls, recording_id: str, audio_path: str, title: str = "") -> "Task":
        """Create a task for a single mixed-audio recording."""
        return cls(
            recording_id=recording_id,
            mode=TaskMode.MIXED,
            title=title,
            local_file_path=audio_path,
            mixed=Track(audio_path=audio_path),
        )

    @classmethod
    def for_separated(cls, recording_id: str, speaker1_path: str, speaker2_path: str, title: str = "") -> "Task":
        """Create a task for two independently captured speaker tracks."""
        return cls(
            recording_id=recording_id,
            mode=TaskMode.SEPARATED,
            title=title,
            speaker1=Track(audio_path=speaker1_path, status=TaskStatus.RECORDED),
            speaker2=Track(audio_path=speaker2_path, status=TaskStatus.RECORDED),
        )

    def track(self, speaker: Optional[int]) -> Track:
        """Return the track a stage targets: the mixed track for ``None``, else a speaker track."""
        if speaker is None:
            return self.mixed
        if speaker == 1:
            return self.speaker1
        if speaker == 2:
            return self.speaker2
        raise ValueError(f"Unknown speaker {speaker}")

    def with_track(self, speaker: Optional[int], track: Track) -> "Task":
        """Return a copy of the task with one track replaced."""
        if speaker is None:
            return replace(self, mixed=track)
        if speaker == 1:
            return replace(self, speaker1=track)
        if speaker == 2:
            return replace(self, speaker2=track)
        raise ValueError(f"Unknown speaker {speaker}")

    def scope_status(self, speaker: Optional[int]) -> Optional[TaskStatus]:
        """Status governing a scope: the overall status for mixed, the track status for a speaker."""
        if speaker is None:
            return self.status
        return self.track(speaker).status

    def scope_failed_step(self, speaker: Optional[int]) -> Optional[TaskStatus]:
        if speaker is None:
            return self.failed_step
        return self.track(speaker).failed_step

    def copy(self) -> "Task":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "recording_id": self.recording_id,
            "mode": self.mode.value,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "local_file_path": self.local_file_path,
            "mixed": self.mixed.to_dict(),
            "speaker1": self.speaker1.to_dict(),
            "speaker2": self.speaker2.to_dict(),
            "status": self.status.value,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "transcript": self.transcript,
            "summary": self.summary,
            "last_error": self.last_error,
            "raw_response": self.raw_response,
            "output_mp3_path": self.output_mp3_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Rebuild a task from :meth:`to_dict` output."""
        created_at = data.get("created_at")
        return cls(
            id=data["id"],
            recording_id=data.get("recording_id", ""),
            mode=TaskMode(data.get("mode", TaskMode.MIXED.value)),
            title=data.get("title") or "",
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
            local_file_path=data.get("local_file_path"),
            mixed=Track.from_dict(data.get("mixed")),
            speaker1=Track.from_dict(data.get("speaker1")),
            speaker2=Track.from_dict(data.get("speaker2")),
            status=_status_or_none(data.get("status")) or TaskStatus.RECORDED,
            failed_step=_status_or_none(data.get("failed_step")),
            transcript=data.get("transcript"),
            summary=data.get("summary"),
            last_error=data.get("last_error"),
            raw_response=data.get("raw_response"),
            output_mp3_path=data.get("output_mp3_path"),
        )


def _status_or_none(value: Optional[str]) -> Optional[TaskStatus]:
    if not value:
        return None
    return TaskStatus(value)
