"""
Task Sink

Creates pages in a Notion database, one per detected task. Every creation
call passes through a shared RateLimiter so concurrent pipeline runs stay
under Notion's request rate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from ..common.errors import DiscubotError, TaskSinkError
from ..common.retry import retry_with_backoff
from ..common.schemas import (
    AISummary,
    DetectedTask,
    DiscussionThread,
    FieldMapping,
    Known,
    SourceConfig,
    TaskFailure,
    TaskRef,
)
from .emoji import convert_slack_emojis
from .field_mapper import NOTION_TEXT_LIMIT, SchemaProperty, apply_mapping
from .identity import IdentityStore, build_notion_mention
from .throttle import RateLimiter

logger = logging.getLogger("discubot.pipeline.task_sink")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

# Notion accepts at most 100 children per request
MAX_CHILD_BLOCKS = 100
MAX_TRANSCRIPT_BLOCKS = 60

SOURCE_LABELS = {"slack": "Slack", "figma": "Figma", "notion": "Notion"}

CONNECTION_MESSAGES = {
    "auth_invalid": "Invalid Notion API token. Check the integration token.",
    "destination_not_found": "Database not found. Share the database with the integration and check its ID.",
    "rate_limited": "Notion rate limit reached. Try again in a moment.",
    "generic": "Could not connect to Notion.",
}


@dataclass
class TaskContext:
    """Everything about the discussion a page needs besides the task itself"""
    thread: DiscussionThread
    summary: AISummary
    source_type: str
    source_url: str
    team_id: str


@dataclass
class BatchResult:
    created: List[TaskRef] = field(default_factory=list)
    errors: List[TaskFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ConnectionTestResult:
    connected: bool
    schema_title: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def classify_response(response: httpx.Response) -> TaskSinkError:
    status = response.status_code
    try:
        body = response.json()
        detail = body.get("message") or response.text
    except ValueError:
        detail = response.text
    detail = (detail or "")[:300]

    if status == 401:
        return TaskSinkError(f"Notion rejected the token: {detail}", status_code=status,
                             code="auth_invalid", retryable=False)
    if status == 404:
        return TaskSinkError(f"Notion database not found: {detail}", status_code=status,
                             code="destination_not_found", retryable=False)
    if status == 429:
        retry_after = None
        try:
            retry_after = float(response.headers.get("retry-after", ""))
        except ValueError:
            pass
        return TaskSinkError("Notion rate limit exceeded", status_code=status,
                             code="rate_limited", retryable=True, retry_after=retry_after)
    if status == 400:
        return TaskSinkError(f"Notion rejected the request: {detail}", status_code=status,
                             code="validation", retryable=False)
    return TaskSinkError(f"Notion API error {status}: {detail}", status_code=status,
                         code="generic", retryable=status >= 500)


def _text(content: str, link: Optional[str] = None, bold: bool = False) -> Dict[str, Any]:
    content = convert_slack_emojis(content)[:NOTION_TEXT_LIMIT]
    item: Dict[str, Any] = {"type": "text", "text": {"content": content}}
    if link:
        item["text"]["link"] = {"url": link}
    if bold:
        item["annotations"] = {"bold": True}
    return item


def _block(block_type: str, rich_text: List[Dict[str, Any]], **extra) -> Dict[str, Any]:
    return {"object": "block", "type": block_type, block_type: {"rich_text": rich_text, **extra}}


def _chunks(text: str, size: int = NOTION_TEXT_LIMIT) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def build_page_blocks(
    task: DetectedTask,
    context: TaskContext,
    identities: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    """Page body: summary, action items, participants, transcript, metadata, link."""
    identities = identities or {}
    blocks: List[Dict[str, Any]] = []

    summary_text = context.summary.summary or task.description
    if summary_text:
        blocks.append(_block(
            "callout",
            [_text("AI Summary: ", bold=True), _text(summary_text)],
            icon={"type": "emoji", "emoji": "🤖"},
            color="blue_background",
        ))

    if task.description and task.description != summary_text:
        blocks.append(_block("paragraph", [_text(task.description)]))

    action_items = task.action_items or context.summary.key_points
    if action_items:
        blocks.append(_block("heading_2", [_text("📋 Key Action Items")]))
        for item in action_items:
            blocks.append(_block("to_do", [_text(item)], checked=False))

    if context.thread.participants:
        rich: List[Dict[str, Any]] = [_text("Participants: ", bold=True)]
        for i, handle in enumerate(context.thread.participants):
            if i:
                rich.append(_text(", "))
            notion_id = identities.get(handle)
            rich.append(build_notion_mention(notion_id) if notion_id else _text(handle))
        blocks.append(_block("paragraph", rich))

    blocks.append({"object": "block", "type": "divider", "divider": {}})

    blocks.append(_block("heading_2", [_text("Thread Content")]))
    transcript = _chunks(context.thread.render())
    if len(transcript) > MAX_TRANSCRIPT_BLOCKS:
        transcript = transcript[:MAX_TRANSCRIPT_BLOCKS] + ["… (transcript truncated)"]
    for chunk in transcript:
        blocks.append(_block("paragraph", [_text(chunk)]))

    source_label = SOURCE_LABELS.get(context.source_type, context.source_type.title())
    metadata = [
        f"Source: {source_label}",
        f"Messages: {context.thread.message_count}",
    ]
    for label, gated in (
        ("Priority", task.priority),
        ("Type", task.type),
        ("Domain", task.routing_category),
        ("Assignee", task.assignee),
    ):
        if isinstance(gated, Known):
            metadata.append(f"{label}: {gated.value}")
    if context.summary.sentiment:
        metadata.append(f"Sentiment: {context.summary.sentiment}")
    if task.tags:
        metadata.append(f"Tags: {', '.join(task.tags)}")
    blocks.append(_block("heading_3", [_text("Metadata")]))
    for line in metadata:
        blocks.append(_block("bulleted_list_item", [_text(line)]))

    blocks.append(_block(
        "paragraph",
        [_text(f"🔗 View Discussion in {source_label}", link=context.source_url)],
    ))
    return blocks[:MAX_CHILD_BLOCKS]


class NotionTaskSink:
    """
    Notion database writer.

    Usage:
        sink = NotionTaskSink(throttle=RateLimiter(0.2))
        result = await sink.create_tasks(config, tasks, context)
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        throttle: Optional[RateLimiter] = None,
        identity_store: Optional[IdentityStore] = None,
        api_base: str = NOTION_API_BASE,
        notion_version: str = NOTION_VERSION,
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._http = http_client
        self._throttle = throttle or RateLimiter()
        self._identities = identity_store
        self._api_base = api_base.rstrip("/")
        self._notion_version = notion_version
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    def _headers(self, config: SourceConfig) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {config.notion_token}",
            "Notion-Version": self._notion_version,
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, path: str, config: SourceConfig, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http.request(
                method, f"{self._api_base}{path}",
                headers=self._headers(config), timeout=self._timeout, **kwargs,
            )
        except httpx.TimeoutException as e:
            raise TaskSinkError(f"Notion request timed out: {e}", code="timeout", retryable=True) from e
        except httpx.TransportError as e:
            raise TaskSinkError(f"Notion connection failed: {e}", code="network", retryable=True) from e
        if response.status_code >= 400:
            raise classify_response(response)
        try:
            data = response.json()
        except ValueError as e:
            raise TaskSinkError(
                f"Notion returned a non-JSON body: {response.text[:300]}",
                status_code=response.status_code, code="generic", retryable=False,
            ) from e
        if not isinstance(data, dict):
            raise TaskSinkError(
                f"Notion returned an unexpected body of type {type(data).__name__}",
                status_code=response.status_code, code="generic", retryable=False,
            )
        return data

    async def _resolve_identities(self, tasks: Sequence[DetectedTask], context: TaskContext) -> Dict[str, str]:
        if self._identities is None:
            return {}
        handles = list(context.thread.participants)
        for task in tasks:
            if isinstance(task.assignee, Known):
                handles.append(task.assignee.value)
        return await self._identities.resolve_many(context.team_id, context.source_type, handles)

    async def create_task(
        self,
        config: SourceConfig,
        task: DetectedTask,
        context: TaskContext,
        identities: Optional[Dict[str, str]] = None,
        mapping: Optional[FieldMapping] = None,
    ) -> Tuple[TaskRef, List[str]]:
        """Create one page. Returns the created ref and any mapping warnings."""
        mapped = apply_mapping(task, mapping or config.field_mapping, identities)
        body = {
            "parent": {"database_id": config.notion_database_id},
            "properties": mapped.properties,
            "children": build_page_blocks(task, context, identities),
        }

        async def _create() -> Dict[str, Any]:
            await self._throttle.wait()
            return await self._send("POST", "/pages", config, json=body)

        page = await retry_with_backoff(
            _create,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            sleep=self._sleep,
        )
        if not page.get("id"):
            raise TaskSinkError(
                f"Notion response has no page id (object: {page.get('object')})",
                code="generic", retryable=False,
            )
        ref = TaskRef(id=page["id"], url=page.get("url") or "", title=task.title)
        logger.info("Created Notion page %s for task '%s'", ref.id, task.title)
        return ref, mapped.warnings

    async def create_tasks(
        self,
        config: SourceConfig,
        tasks: Sequence[DetectedTask],
        context: TaskContext,
        mapping: Optional[FieldMapping] = None,
    ) -> BatchResult:
        """
        Create pages one after another. A failed task is recorded and the
        rest are still attempted.
        """
        result = BatchResult()
        identities = await self._resolve_identities(tasks, context)
        for position, task in enumerate(tasks):
            try:
                ref, warnings = await self.create_task(config, task, context, identities, mapping)
            except DiscubotError as e:
                logger.error("Failed to create Notion page for '%s': %s", task.title, e)
                result.errors.append(TaskFailure(
                    title=task.title,
                    error=str(e),
                    retryable=e.retryable,
                    status_code=getattr(e, "status_code", None),
                ))
                continue
            ref.index = position
            result.created.append(ref)
            for warning in warnings:
                logger.warning("Task '%s': %s", task.title, warning)
            result.warnings.extend(warnings)
        return result

    async def fetch_schema(self, config: SourceConfig) -> Tuple[str, List[SchemaProperty]]:
        """Database title and properties, for mapping proposals."""
        data = await self._send("GET", f"/databases/{config.notion_database_id}", config)
        title = "".join(t.get("plain_text", "") for t in data.get("title", [])) or "Untitled"
        properties = []
        for name, prop in (data.get("properties") or {}).items():
            prop_type = prop.get("type", "rich_text")
            options = [o.get("name", "") for o in (prop.get(prop_type) or {}).get("options", [])] \
                if prop_type in ("select", "multi_select", "status") else []
            properties.append(SchemaProperty(name=name, type=prop_type, options=options))
        return title, properties

    async def test_connection(self, config: SourceConfig) -> ConnectionTestResult:
        try:
            title, _ = await self.fetch_schema(config)
        except TaskSinkError as e:
            code = e.code if e.code in CONNECTION_MESSAGES else "generic"
            return ConnectionTestResult(
                connected=False,
                error=CONNECTION_MESSAGES[code],
                error_code=code,
            )
        return ConnectionTestResult(connected=True, schema_title=title)
