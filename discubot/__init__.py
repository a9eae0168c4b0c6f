"""
Discubot

Turns discussions from chat channels and design-file comments into tasks in
a Notion database.

Pipeline:
- Source adapters normalize webhooks into a ParsedDiscussion
- The analyzer summarizes the thread and detects tasks (cached, retried)
- The field mapper fits AI fields onto the destination schema
- The task sink creates pages, throttled
- The processor runs it all as a resumable state machine

Usage:
    from discubot.common import load_config
    from discubot.pipeline import DiscussionProcessor, Analyzer, NotionTaskSink
    from discubot.pipeline.adapters import SlackAdapter, FigmaAdapter
"""

__version__ = "0.1.0"
