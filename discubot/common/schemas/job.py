"""
Processing jobs.

A job tracks one pass of a discussion through the pipeline. It is persisted
after every stage so a failed run can resume from the first incomplete stage.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import InvalidTransitionError
from .analysis import AnalysisResult
from .discussion import DiscussionStatus


class PipelineStage(str, Enum):
    VALIDATING = "validating"
    LOADING_CONFIG = "loading_config"
    BUILDING_THREAD = "building_thread"
    ANALYZING = "analyzing"
    MAPPING_AND_CREATING = "mapping_and_creating"
    ACKNOWLEDGING = "acknowledging"
    COMPLETED = "completed"


STAGE_ORDER = [
    PipelineStage.VALIDATING,
    PipelineStage.LOADING_CONFIG,
    PipelineStage.BUILDING_THREAD,
    PipelineStage.ANALYZING,
    PipelineStage.MAPPING_AND_CREATING,
    PipelineStage.ACKNOWLEDGING,
]


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


_S = DiscussionStatus

ALLOWED_TRANSITIONS = {
    _S.PENDING: {_S.PROCESSING, _S.FAILED},
    _S.PROCESSING: {_S.ANALYZED, _S.COMPLETED, _S.FAILED},
    _S.ANALYZED: {_S.COMPLETED, _S.FAILED},
    _S.FAILED: {_S.RETRYING},
    _S.RETRYING: {_S.PROCESSING, _S.FAILED},
    _S.COMPLETED: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:16]}"


@dataclass
class StageOutcome:
    status: str
    duration: float = 0.0
    error: Optional[Dict[str, Any]] = None
    finished_at: str = field(default_factory=_now)


@dataclass
class TaskRef:
    """A created destination record"""
    id: str
    url: str
    title: str = ""
    # Position of the source task in the analysis task list
    index: Optional[int] = None


@dataclass
class TaskFailure:
    title: str
    error: str
    retryable: bool = False
    status_code: Optional[int] = None


@dataclass
class Job:
    team_id: str
    source_type: str
    source_thread_id: str
    id: str = field(default_factory=generate_job_id)
    discussion_id: Optional[str] = None
    config_id: Optional[str] = None
    status: str = DiscussionStatus.PENDING.value
    current_stage: Optional[str] = None
    last_completed_stage: Optional[str] = None
    failed_stage: Optional[str] = None
    stages: Dict[str, StageOutcome] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    retryable: bool = False
    attempts: int = 0
    max_attempts: int = 3
    checkpoint: Dict[str, Any] = field(default_factory=dict)
    task_refs: List[TaskRef] = field(default_factory=list)
    task_errors: List[TaskFailure] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    processing_time: Optional[float] = None

    def transition(self, new_status: DiscussionStatus) -> None:
        current = DiscussionStatus(self.status)
        new_status = DiscussionStatus(new_status)
        if new_status == current:
            return
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {current.value} to {new_status.value}"
            )
        self.status = new_status.value
        if new_status == DiscussionStatus.COMPLETED:
            self.completed_at = _now()

    def record_stage(
        self,
        stage: PipelineStage,
        status: StageStatus,
        duration: float,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.stages[stage.value] = StageOutcome(
            status=status.value, duration=round(duration, 4), error=error
        )
        if status != StageStatus.FAILED:
            self.last_completed_stage = stage.value

    def next_stage(self) -> PipelineStage:
        """First stage that has not completed yet"""
        if self.last_completed_stage is None:
            return STAGE_ORDER[0]
        done = STAGE_ORDER.index(PipelineStage(self.last_completed_stage))
        if done + 1 >= len(STAGE_ORDER):
            return PipelineStage.COMPLETED
        return STAGE_ORDER[done + 1]

    @property
    def can_resume(self) -> bool:
        if self.status == DiscussionStatus.PENDING.value:
            return self.last_completed_stage is not None
        return self.status in (DiscussionStatus.FAILED.value, DiscussionStatus.RETRYING.value) and self.retryable

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        data = dict(data)
        data["stages"] = {k: StageOutcome(**v) for k, v in (data.get("stages") or {}).items()}
        data["task_refs"] = [TaskRef(**t) for t in data.get("task_refs") or []]
        data["task_errors"] = [TaskFailure(**t) for t in data.get("task_errors") or []]
        return cls(**data)


@dataclass
class ProcessingResult:
    job_id: str
    discussion_id: Optional[str]
    status: str
    analysis: Optional[AnalysisResult] = None
    tasks: List[TaskRef] = field(default_factory=list)
    task_errors: List[TaskFailure] = field(default_factory=list)
    processing_time: float = 0.0
    deferred: bool = False

    @property
    def is_multi_task(self) -> bool:
        return len(self.tasks) > 1
