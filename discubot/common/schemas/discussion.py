"""
Canonical discussion shapes.

Every source adapter produces these; nothing after the adapter layer knows
which source a message came from except through ``source_type``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Enums
# ============================================================================

class SourceType(str, Enum):
    """Discussion sources with an adapter"""
    SLACK = "slack"
    FIGMA = "figma"
    NOTION = "notion"


class DiscussionStatus(str, Enum):
    """Job / discussion lifecycle status"""
    PENDING = "pending"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


# ============================================================================
# Messages and threads
# ============================================================================

class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    file_name: str = ""
    mime_type: Optional[str] = None
    size: Optional[int] = None


class ThreadMessage(BaseModel):
    """One message in a thread. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    id: str
    author_handle: str
    content: str
    timestamp: datetime
    attachments: List[Attachment] = Field(default_factory=list)

    def with_content(self, content: str) -> "ThreadMessage":
        return self.model_copy(update={"content": content})


def _sort_key(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


class DiscussionThread(BaseModel):
    """
    A root message plus its replies.

    Replies are kept in ascending timestamp order and may not precede the
    root; participants are de-duplicated in first-seen order.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    root_message: ThreadMessage
    replies: List[ThreadMessage] = Field(default_factory=list)
    participants: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _order_replies(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        replies = data.get("replies")
        if replies:
            replies = [
                ThreadMessage.model_validate(r) if isinstance(r, dict) else r
                for r in replies
            ]
            data = {**data, "replies": sorted(replies, key=lambda m: _sort_key(m.timestamp))}
        participants = data.get("participants")
        if participants:
            data = {**data, "participants": list(dict.fromkeys(p for p in participants if p))}
        return data

    @model_validator(mode="after")
    def _replies_follow_root(self) -> "DiscussionThread":
        root_ts = _sort_key(self.root_message.timestamp)
        for reply in self.replies:
            if _sort_key(reply.timestamp) < root_ts:
                raise ValueError(
                    f"reply {reply.id} is older than root message {self.root_message.id}"
                )
        return self

    @property
    def messages(self) -> List[ThreadMessage]:
        return [self.root_message, *self.replies]

    @property
    def message_count(self) -> int:
        return 1 + len(self.replies)

    def render(self) -> str:
        """Plain transcript used for analysis and for the destination page body."""
        parts = [
            f"Root message by {self.root_message.author_handle}:",
            self.root_message.content,
            "",
        ]
        for reply in self.replies:
            parts.append(f"Reply by {reply.author_handle}:\n{reply.content}")
        return "\n".join(parts).strip()

    def map_contents(self, fn) -> "DiscussionThread":
        """Copy of the thread with ``fn`` applied to every message body."""
        return self.model_copy(update={
            "root_message": self.root_message.with_content(fn(self.root_message.content)),
            "replies": [r.with_content(fn(r.content)) for r in self.replies],
        })


class ParsedDiscussion(BaseModel):
    """Normalized incoming event. The only input the orchestrator accepts."""
    model_config = ConfigDict(frozen=True)

    source_type: str
    source_thread_id: str
    source_url: str
    team_id: str
    author_handle: str
    title: str
    content: str
    participants: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)


REQUIRED_DISCUSSION_FIELDS = (
    "source_type",
    "source_thread_id",
    "source_url",
    "team_id",
    "author_handle",
    "title",
    "content",
)


def missing_fields(parsed: ParsedDiscussion) -> List[str]:
    """Required fields that are empty or whitespace-only."""
    missing = []
    for name in REQUIRED_DISCUSSION_FIELDS:
        value = getattr(parsed, name, None)
        if not isinstance(value, str) or not value.strip():
            missing.append(name)
    return missing
