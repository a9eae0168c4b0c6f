"""
Source Adapters

Each adapter converts a source-specific webhook into a ParsedDiscussion and
talks back to the source.

Available Adapters:
- SlackAdapter: Slack Events API
- FigmaAdapter: Figma comment emails via Mailgun
- ResendAdapter: Figma comment emails via Resend
- NotionCommentAdapter: Notion comment webhooks
"""

from typing import Dict, Iterable

from .base import SourceAdapter, ValidationResult, split_thread_id, join_thread_id, DEFAULT_TEAM
from .slack import SlackAdapter
from .figma import FigmaAdapter
from .resend import ResendAdapter
from .notion import NotionCommentAdapter


def build_registry(adapters: Iterable[SourceAdapter]) -> Dict[str, SourceAdapter]:
    """source_type -> adapter. The first adapter registered for a type wins."""
    registry: Dict[str, SourceAdapter] = {}
    for adapter in adapters:
        registry.setdefault(adapter.source_type, adapter)
    return registry


__all__ = [
    "SourceAdapter",
    "ValidationResult",
    "split_thread_id",
    "join_thread_id",
    "DEFAULT_TEAM",
    "SlackAdapter",
    "FigmaAdapter",
    "ResendAdapter",
    "NotionCommentAdapter",
    "build_registry",
]
