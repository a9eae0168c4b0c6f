"""
Discubot Schemas

Canonical discussion, analysis, configuration and job shapes.
"""

from .gated import UNKNOWN, Known, Gated, gate_choice, gate_text, to_optional, from_optional, is_known
from .discussion import (
    SourceType,
    DiscussionStatus,
    Attachment,
    ThreadMessage,
    DiscussionThread,
    ParsedDiscussion,
    missing_fields,
)
from .analysis import (
    Priority,
    TaskType,
    Sentiment,
    AISummary,
    DetectedTask,
    TaskDetectionResult,
    AnalysisResult,
    AI_FIELD_VALUES,
)
from .source_config import SourceConfig, FieldMapping, PropertyMapping
from .job import (
    Job,
    PipelineStage,
    StageStatus,
    StageOutcome,
    TaskRef,
    TaskFailure,
    ProcessingResult,
    STAGE_ORDER,
)

__all__ = [
    "UNKNOWN",
    "Known",
    "Gated",
    "gate_choice",
    "gate_text",
    "to_optional",
    "from_optional",
    "is_known",
    "SourceType",
    "DiscussionStatus",
    "Attachment",
    "ThreadMessage",
    "DiscussionThread",
    "ParsedDiscussion",
    "missing_fields",
    "Priority",
    "TaskType",
    "Sentiment",
    "AISummary",
    "DetectedTask",
    "TaskDetectionResult",
    "AnalysisResult",
    "AI_FIELD_VALUES",
    "SourceConfig",
    "FieldMapping",
    "PropertyMapping",
    "Job",
    "PipelineStage",
    "StageStatus",
    "StageOutcome",
    "TaskRef",
    "TaskFailure",
    "ProcessingResult",
    "STAGE_ORDER",
]
