"""
Notion Comment Adapter

Handles Notion webhook ``comment.created`` events. A comment is only picked
up when it contains the trigger keyword; the thread is every comment in the
same Notion discussion.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from ...common.errors import DiscubotError, InputValidationError, NotFoundError
from ...common.schemas import (
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
    ThreadMessage,
)
from ..emoji import parse_content_with_links
from .base import (
    FETCH_TIMEOUT,
    REPLY_TIMEOUT,
    SourceAdapter,
    ValidationResult,
    join_thread_id,
    split_thread_id,
)

logger = logging.getLogger("discubot.pipeline.adapters.notion")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

DEFAULT_TRIGGER_KEYWORD = "@discubot"

# Events older or newer than this are treated as replays
TIMESTAMP_TOLERANCE = 300

RATE_LIMIT_WINDOW = 60.0
RATE_LIMIT_MAX_REQUESTS = 60

TITLE_MAX_LENGTH = 50


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def plain_text(rich_text: Optional[List[Dict[str, Any]]]) -> str:
    """Concatenated plain text of a Notion rich text array"""
    parts = []
    for item in rich_text or []:
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content", "")
        parts.append(text)
    return "".join(parts)


def check_for_trigger(rich_text: Optional[List[Dict[str, Any]]], keyword: str = DEFAULT_TRIGGER_KEYWORD) -> bool:
    """Case-insensitive search for the trigger keyword anywhere in the comment"""
    return keyword.lower() in plain_text(rich_text).lower()


def build_discussion_url(parent_id: str, discussion_id: str) -> str:
    return f"https://www.notion.so/{parent_id.replace('-', '')}?d={discussion_id.replace('-', '')}"


class WorkspaceRateLimiter:
    """Fixed-window request counter per Notion workspace"""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window: float = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, workspace_id: str) -> bool:
        now = self._clock()
        reset_at, count = self._windows.get(workspace_id, (0.0, 0))
        if now >= reset_at:
            self._windows[workspace_id] = (now + self.window, 1)
            return True
        if count >= self.max_requests:
            logger.warning("Notion workspace %s over %d requests per window", workspace_id, self.max_requests)
            return False
        self._windows[workspace_id] = (reset_at, count + 1)
        return True


class NotionCommentAdapter(SourceAdapter):
    """
    Adapter for Notion page and block comments.

    Thread ids are ``<parentId>:<discussionId>``. The webhook only carries
    ids, so the comment is fetched with the integration token of the config
    registered for the event's workspace.

    Processes:
    - comment.created events containing the trigger keyword

    Ignores:
    - Every other event type
    - Events outside the replay window
    """

    source_type = "notion"

    # Notion's API has no reactions; status is not mirrored back
    status_indicators: Dict[DiscussionStatus, str] = {}

    def __init__(
        self,
        webhook_secret: str = "",
        config_resolver: Optional[Callable[[str], Optional[SourceConfig]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = NOTION_API_BASE,
        notion_version: str = NOTION_VERSION,
        rate_limiter: Optional[WorkspaceRateLimiter] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize Notion comment adapter.

        Args:
            webhook_secret: Notion webhook signing secret
            config_resolver: Maps a Notion workspace id to the source config
                that owns it
            http_client: Shared httpx client
            api_base: Notion API base URL
            notion_version: Notion-Version header value
            rate_limiter: Per-workspace request limiter
            clock: Wall clock for the replay window
        """
        super().__init__(http_client)
        self._webhook_secret = webhook_secret
        self._config_resolver = config_resolver or (lambda workspace_id: None)
        self._api_base = api_base.rstrip("/")
        self._notion_version = notion_version
        self.rate_limiter = rate_limiter or WorkspaceRateLimiter()
        self._clock = clock

    @staticmethod
    def _token(config: SourceConfig) -> str:
        return config.api_token or config.notion_token

    def _headers(self, config: SourceConfig) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token(config)}",
            "Notion-Version": self._notion_version,
        }

    # ------------------------------------------------------------------
    # Webhook parsing
    # ------------------------------------------------------------------

    def is_url_verification(self, payload: Dict[str, Any]) -> bool:
        """Notion's subscription handshake carries only a verification token"""
        return "verification_token" in payload and payload.get("type") in (None, "url_verification")

    def get_challenge(self, payload: Dict[str, Any]) -> Optional[str]:
        if self.is_url_verification(payload):
            return payload.get("verification_token") or None
        return None

    def ignore_reason(self, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("type") != "comment.created":
            return f"event type '{payload.get('type')}' ignored (only 'comment.created' is processed)"
        sent_at = _parse_time(payload.get("timestamp"))
        if sent_at is not None and abs(self._clock() - sent_at.timestamp()) > TIMESTAMP_TOLERANCE:
            return "event timestamp outside tolerance window"
        return None

    def _event_ids(self, payload: Dict[str, Any]) -> Tuple[str, str, str, str]:
        data = payload.get("data") or {}
        parent = data.get("parent") or {}
        comment_id = data.get("id") or ""
        discussion_id = data.get("discussion_id") or ""
        parent_id = parent.get("page_id") or parent.get("block_id") or ""

        missing = []
        if not comment_id:
            missing.append("data.id")
        if not discussion_id:
            missing.append("data.discussion_id")
        if not parent_id:
            missing.append("data.parent")
        if missing:
            raise InputValidationError(
                f"Notion comment event missing required fields: {', '.join(missing)}",
                fields=missing, context={"source_type": self.source_type},
            )
        return comment_id, discussion_id, parent_id, parent.get("type", "")

    def trigger_keyword(self, config: SourceConfig) -> str:
        return config.source_metadata.get("trigger_keyword") or DEFAULT_TRIGGER_KEYWORD

    async def parse_incoming(self, payload: Dict[str, Any]) -> ParsedDiscussion:
        """
        Parse a comment.created event.

        The comment is fetched to read its text. ``metadata["triggered"]``
        says whether it contains the config's trigger keyword.
        """
        if payload.get("type") != "comment.created":
            raise InputValidationError(
                f"Unsupported Notion event type: {payload.get('type')}",
                fields=["type"], context={"source_type": self.source_type},
            )
        comment_id, discussion_id, parent_id, parent_type = self._event_ids(payload)

        workspace_id = payload.get("workspace_id") or ""
        config = self._config_resolver(workspace_id) if workspace_id else None
        if config is None:
            raise InputValidationError(
                f"No active Notion source configured for workspace {workspace_id or '(none)'}",
                fields=["workspace_id"], context={"source_type": self.source_type},
            )
        if not self._token(config):
            raise InputValidationError(
                f"Notion source {config.id} has no API token",
                fields=["api_token"], context={"source_type": self.source_type},
            )

        thread_id = join_thread_id(parent_id, discussion_id)
        comment = await self.fetch_comment(comment_id, config, thread_id)
        text = plain_text(comment.get("rich_text"))
        keyword = self.trigger_keyword(config)
        author = (comment.get("created_by") or {}).get("id") or "unknown"
        created = _parse_time(comment.get("created_time")) or datetime.now(timezone.utc)

        first_line = text.strip().split("\n", 1)[0].strip()
        title = first_line if len(first_line) <= TITLE_MAX_LENGTH else first_line[:TITLE_MAX_LENGTH - 3] + "..."

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=thread_id,
            source_url=build_discussion_url(parent_id, discussion_id),
            team_id=config.team_id,
            author_handle=author,
            title=title or "Notion Comment",
            content=text,
            participants=[author],
            timestamp=created,
            metadata={
                "comment_id": comment_id,
                "discussion_id": discussion_id,
                "parent_id": parent_id,
                "parent_type": parent_type,
                "workspace_id": workspace_id,
                "trigger_keyword": keyword,
                "triggered": check_for_trigger(comment.get("rich_text"), keyword),
            },
        )

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------

    async def fetch_comment(self, comment_id: str, config: SourceConfig, thread_id: Optional[str] = None) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"{self._api_base}/comments/{comment_id}",
            headers=self._headers(config), thread_id=thread_id, timeout=FETCH_TIMEOUT,
        )
        self._raise_for_status(response, thread_id)
        return self._json(response, thread_id)

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        parent_id, discussion_id = split_thread_id(thread_id)
        if not parent_id or not discussion_id:
            raise NotFoundError(
                f"Invalid Notion thread id {thread_id!r}, expected parentId:discussionId",
                source_type=self.source_type, thread_id=thread_id,
            )

        comments: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"block_id": parent_id, "page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            response = await self._request(
                "GET", f"{self._api_base}/comments",
                headers=self._headers(config), params=params,
                thread_id=thread_id, timeout=FETCH_TIMEOUT,
            )
            self._raise_for_status(response, thread_id)
            data = self._json(response, thread_id)
            comments.extend(c for c in data.get("results", []) if c.get("discussion_id") == discussion_id)
            cursor = data.get("next_cursor") if data.get("has_more") else None
            if not cursor:
                break

        if not comments:
            raise NotFoundError(
                f"No comments found for Notion discussion {discussion_id}",
                source_type=self.source_type, thread_id=thread_id,
            )

        comments.sort(key=lambda c: c.get("created_time") or "")
        messages = [self._to_thread_message(c) for c in comments]
        root, replies = messages[0], messages[1:]

        logger.info("Fetched Notion discussion %s (%d replies)", thread_id, len(replies))

        return DiscussionThread(
            id=thread_id,
            root_message=root,
            replies=replies,
            participants=[m.author_handle for m in messages],
            metadata={"page_id": parent_id, "discussion_id": discussion_id},
        )

    def _to_thread_message(self, raw: Dict[str, Any]) -> ThreadMessage:
        return ThreadMessage(
            id=raw.get("id", ""),
            author_handle=(raw.get("created_by") or {}).get("id") or "unknown",
            content=plain_text(raw.get("rich_text")),
            timestamp=_parse_time(raw.get("created_time")) or datetime.now(timezone.utc),
        )

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        _, discussion_id = split_thread_id(thread_id)
        if not discussion_id:
            logger.warning("Cannot reply to Notion thread %s without a discussion id", thread_id)
            return False
        try:
            response = await self._request(
                "POST", f"{self._api_base}/comments",
                headers=self._headers(config), thread_id=thread_id, timeout=REPLY_TIMEOUT,
                json={"discussion_id": discussion_id, "rich_text": parse_content_with_links(message)},
            )
            self._raise_for_status(response, thread_id)
            self._json(response, thread_id)
            return True
        except DiscubotError as e:
            logger.warning("Failed to post Notion reply to %s: %s", thread_id, e)
            return False

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        return True

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        result = self._validate_common(config)
        token = self._token(config)
        if token and "API token is required" in result.errors:
            # The destination token doubles as the comment API token
            result.errors.remove("API token is required")
        if token and not token.startswith(("secret_", "ntn_")):
            result.warnings.append('Notion API token should start with "secret_" or "ntn_"')
        if not config.workspace_id:
            result.warnings.append("No workspace id in source metadata; comment events cannot be routed")
        result.valid = not result.errors
        return result

    async def test_connection(self, config: SourceConfig) -> bool:
        if not self._token(config):
            return False
        try:
            response = await self._request(
                "GET", f"{self._api_base}/users/me", headers=self._headers(config), timeout=REPLY_TIMEOUT,
            )
            self._raise_for_status(response)
            data = self._json(response)
        except DiscubotError as e:
            logger.warning("Notion connection test failed: %s", e)
            return False
        if data.get("object") != "user":
            logger.warning("Notion connection test returned %s instead of a user", data.get("object"))
            return False
        logger.info("Notion connection OK (bot: %s)", data.get("name"))
        return True

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Verify the X-Notion-Signature header.

        HMAC-SHA256 of the raw body with the webhook secret, hex encoded,
        optionally prefixed with ``sha256=`` or ``v1=``.
        """
        if not self._webhook_secret:
            # Skip verification if no secret configured
            return True

        signature = headers.get("x-notion-signature") or ""
        for prefix in ("sha256=", "v1="):
            if signature.startswith(prefix):
                signature = signature[len(prefix):]
                break
        if not signature:
            return False

        expected_sig = hmac.new(
            self._webhook_secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected_sig, signature)
