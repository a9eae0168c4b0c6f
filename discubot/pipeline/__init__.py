"""
Discubot Pipeline

Webhook intake, thread building, analysis and Notion task creation.

Components:
- adapters: Source adapters (Slack, Figma via Mailgun or Resend)
- analyzer: LLM summary and task detection with a TTL cache
- field_mapper: Fuzzy mapping of AI fields onto a Notion schema
- task_sink: Rate-limited Notion page creation
- processor: Stage-by-stage orchestrator with resumable jobs
"""

from .analysis_cache import AnalysisCache
from .analyzer import Analyzer, AnalysisOptions
from .field_mapper import propose_mapping, propose_value_mapping, apply_mapping
from .identity import InMemoryIdentityStore, bulk_import_mappings
from .processor import DiscussionProcessor, ProcessOptions, filter_bot_mentions
from .stores import InMemoryConfigStore, InMemoryJobStore
from .task_sink import NotionTaskSink, TaskContext, BatchResult
from .throttle import RateLimiter

__all__ = [
    "AnalysisCache",
    "Analyzer",
    "AnalysisOptions",
    "propose_mapping",
    "propose_value_mapping",
    "apply_mapping",
    "InMemoryIdentityStore",
    "bulk_import_mappings",
    "DiscussionProcessor",
    "ProcessOptions",
    "filter_bot_mentions",
    "InMemoryConfigStore",
    "InMemoryJobStore",
    "NotionTaskSink",
    "TaskContext",
    "BatchResult",
    "RateLimiter",
]
