"""
Meeting transcription pipeline.

Drives a recording through transcode, upload, remote task creation and
polling, for a single mixed track or two speaker tracks processed in
parallel and fused afterwards.
"""

from .models import Task, TaskMode, TaskStatus, Track
from .normalizer import build_transcript_text
from .orchestrator import MeetingPipeline, PipelineSettings, SequenceOutcome, fuse_transcripts
from .results import Done, Failed, FailureDomain, Pending
from .stages import PipelineContext, Stage, StageKind, run_stage, select_stages

__all__ = [
    "Task",
    "TaskMode",
    "TaskStatus",
    "Track",
    "build_transcript_text",
    "MeetingPipeline",
    "PipelineSettings",
    "SequenceOutcome",
    "fuse_transcripts",
    "Done",
    "Failed",
    "FailureDomain",
    "Pending",
    "PipelineContext",
    "Stage",
    "StageKind",
    "run_stage",
    "select_stages",
]
