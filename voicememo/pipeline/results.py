"""
Stage results.

A stage either finishes (``Done``), reports that the remote work is still in
progress (``Pending``), or fails (``Failed``). Only ``Pending`` is retried.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union

from .models import Task

# Failure codes
MISSING_INPUT = 404
STAGE_FAILED = 500
POLL_TIMEOUT = 408


class FailureDomain(Enum):
    PIPELINE = "pipeline"  # precondition not met or local processing failed
    REMOTE = "remote"  # the speech task itself reported failure
    TRANSPORT = "transport"  # object store / speech API client error


@dataclass(frozen=True)
class Done:
    task: Task


@dataclass(frozen=True)
class Pending:
    message: str = "Task running"


@dataclass(frozen=True)
class Failed:
    domain: FailureDomain
    code: int
    message: str
    # Backend fields worth keeping on the track even though the stage failed
    diagnostics: Dict[str, Any] = field(default_factory=dict)


StageResult = Union[Done, Pending, Failed]
