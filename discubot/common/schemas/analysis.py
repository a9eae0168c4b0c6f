"""
Analysis results.

Dataclasses rather than pydantic models: the gated fields are a plain sum
type and the results are serialized by hand into job checkpoints.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .gated import UNKNOWN, Gated, Known, gate_choice, gate_text, to_optional


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskType(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    QUESTION = "question"
    IMPROVEMENT = "improvement"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


PRIORITY_VALUES = [p.value for p in Priority]
TASK_TYPE_VALUES = [t.value for t in TaskType]
SENTIMENT_VALUES = [s.value for s in Sentiment]

# AI field name -> fixed enumeration (None means free-form)
AI_FIELD_VALUES: Dict[str, Optional[List[str]]] = {
    "priority": PRIORITY_VALUES,
    "type": TASK_TYPE_VALUES,
    "assignee": None,
    "routing_category": None,
}


def parse_confidence(raw: Any) -> Optional[float]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if 0.0 <= raw <= 1.0:
        return float(raw)
    return None


def gate_domain(raw: Any, available_domains: Optional[Iterable[str]] = None) -> Gated[str]:
    """Routing category, restricted to ``available_domains`` when given."""
    if available_domains:
        return gate_choice(raw, list(available_domains))
    gated = gate_text(raw)
    if isinstance(gated, Known):
        return Known(gated.value.lower())
    return gated


def _str_list(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    return [str(item).strip() for item in raw if isinstance(item, (str, int, float)) and str(item).strip()]


@dataclass
class AISummary:
    summary: str
    key_points: List[str] = field(default_factory=list)
    sentiment: Optional[str] = None
    confidence: Optional[float] = None
    routing_category: Gated[str] = UNKNOWN

    @classmethod
    def from_llm(cls, data: Dict[str, Any], available_domains: Optional[List[str]] = None) -> "AISummary":
        sentiment = gate_choice(data.get("sentiment"), SENTIMENT_VALUES)
        return cls(
            summary=str(data.get("summary") or "").strip(),
            key_points=_str_list(data.get("keyPoints", data.get("key_points"))),
            sentiment=to_optional(sentiment),
            confidence=parse_confidence(data.get("confidence")),
            routing_category=gate_domain(
                data.get("domain", data.get("routing_category")), available_domains
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "key_points": list(self.key_points),
            "sentiment": self.sentiment,
            "confidence": self.confidence,
            "routing_category": to_optional(self.routing_category),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AISummary":
        return cls(
            summary=data.get("summary", ""),
            key_points=list(data.get("key_points") or []),
            sentiment=data.get("sentiment"),
            confidence=data.get("confidence"),
            routing_category=gate_text(data.get("routing_category")),
        )


@dataclass
class DetectedTask:
    """A candidate work item. Gated fields are never defaulted."""
    title: str
    description: str = ""
    action_items: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    priority: Gated[str] = UNKNOWN
    type: Gated[str] = UNKNOWN
    assignee: Gated[str] = UNKNOWN
    routing_category: Gated[str] = UNKNOWN

    GATED_FIELDS = ("priority", "type", "assignee", "routing_category")

    @classmethod
    def from_llm(cls, data: Dict[str, Any], available_domains: Optional[List[str]] = None) -> "DetectedTask":
        return cls(
            title=str(data.get("title") or "").strip(),
            description=str(data.get("description") or "").strip(),
            action_items=_str_list(data.get("actionItems", data.get("action_items"))),
            tags=_str_list(data.get("tags")),
            priority=gate_choice(data.get("priority"), PRIORITY_VALUES),
            type=gate_choice(data.get("type"), TASK_TYPE_VALUES),
            assignee=gate_text(data.get("assignee")),
            routing_category=gate_domain(
                data.get("domain", data.get("routing_category")), available_domains
            ),
        )

    def gated(self, name: str) -> Gated[str]:
        if name not in self.GATED_FIELDS:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "description": self.description,
            "action_items": list(self.action_items),
            "tags": list(self.tags),
        }
        for name in self.GATED_FIELDS:
            data[name] = to_optional(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedTask":
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            action_items=list(data.get("action_items") or []),
            tags=list(data.get("tags") or []),
            priority=gate_choice(data.get("priority"), PRIORITY_VALUES),
            type=gate_choice(data.get("type"), TASK_TYPE_VALUES),
            assignee=gate_text(data.get("assignee")),
            routing_category=gate_text(data.get("routing_category")),
        )


@dataclass
class TaskDetectionResult:
    tasks: List[DetectedTask] = field(default_factory=list)
    is_multi_task: bool = False
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "is_multi_task": self.is_multi_task,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskDetectionResult":
        return cls(
            tasks=[DetectedTask.from_dict(t) for t in data.get("tasks") or []],
            is_multi_task=bool(data.get("is_multi_task")),
            confidence=data.get("confidence"),
        )


@dataclass
class AnalysisResult:
    summary: AISummary
    task_detection: TaskDetectionResult
    processing_time: float = 0.0  # seconds
    cached: bool = False

    @property
    def tasks(self) -> List[DetectedTask]:
        return self.task_detection.tasks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "task_detection": self.task_detection.to_dict(),
            "processing_time": self.processing_time,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            summary=AISummary.from_dict(data.get("summary") or {}),
            task_detection=TaskDetectionResult.from_dict(data.get("task_detection") or {}),
            processing_time=data.get("processing_time", 0.0),
            cached=bool(data.get("cached")),
        )
