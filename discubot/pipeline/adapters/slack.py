"""
Slack Adapter

Handles Slack Events API webhooks and talks to the Slack Web API for
thread fetches, replies and reaction-based status.
"""

import hmac
import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from ...common.errors import (
    AdapterError,
    ConfigurationError,
    DiscubotError,
    InputValidationError,
    NotFoundError,
    TransientError,
)
from ...common.schemas import (
    Attachment,
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
    ThreadMessage,
)
from .base import (
    FETCH_TIMEOUT,
    REPLY_TIMEOUT,
    SourceAdapter,
    ValidationResult,
    join_thread_id,
    split_thread_id,
)

logger = logging.getLogger("discubot.pipeline.adapters.slack")

SLACK_API_BASE = "https://slack.com/api"

# Slack mentions format: <@U12345678>
MENTION_PATTERN = re.compile(r"<@([UW][A-Z0-9]+)>")

_NOT_FOUND_ERRORS = {"thread_not_found", "channel_not_found", "message_not_found"}
_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "account_inactive", "missing_scope"}
_RATE_LIMIT_ERRORS = {"ratelimited", "rate_limited"}

TITLE_MAX_LENGTH = 50


def _ts_to_datetime(ts: Any) -> datetime:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def build_title(text: str, fallback: str = "Slack Message") -> str:
    """First line of the message, cut to fit a task title."""
    first_line = text.strip().split("\n", 1)[0].strip() if text else ""
    if not first_line:
        return fallback
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[:TITLE_MAX_LENGTH - 3] + "..."
    return first_line


def build_message_url(workspace_id: str, channel: str, ts: str) -> str:
    return f"https://slack.com/app_redirect?team={workspace_id}&channel={channel}&message_ts={ts}"


class SlackAdapter(SourceAdapter):
    """
    Adapter for Slack channels.

    Processes:
    - message events (new messages and thread replies)
    - app_mention events

    Ignores:
    - Bot messages
    - Message subtypes (edits, deletions, joins, ...)
    """

    source_type = "slack"

    status_indicators = {
        DiscussionStatus.PENDING: "eyes",
        DiscussionStatus.PROCESSING: "hourglass_flowing_sand",
        DiscussionStatus.ANALYZED: "robot_face",
        DiscussionStatus.COMPLETED: "white_check_mark",
        DiscussionStatus.FAILED: "x",
        DiscussionStatus.RETRYING: "arrows_counterclockwise",
    }

    def __init__(
        self,
        signing_secret: str = "",
        team_resolver: Optional[Callable[[str], Optional[str]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = SLACK_API_BASE,
    ):
        """
        Initialize Slack adapter.

        Args:
            signing_secret: Slack signing secret for verification
            team_resolver: Maps a Slack workspace id to our team id. Defaults
                to using the workspace id itself.
            http_client: Shared httpx client
            api_base: Web API base URL
        """
        super().__init__(http_client)
        self._signing_secret = signing_secret
        self._team_resolver = team_resolver or (lambda workspace_id: workspace_id)
        self._api_base = api_base.rstrip("/")

    # ------------------------------------------------------------------
    # Webhook parsing
    # ------------------------------------------------------------------

    def ignore_reason(self, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("type") != "event_callback":
            return None
        event = payload.get("event") or {}
        if event.get("type") not in ("message", "app_mention"):
            return f"unsupported event type: {event.get('type')}"
        if event.get("bot_id") or event.get("subtype") == "bot_message":
            return "bot message"
        if event.get("subtype"):
            return f"message subtype: {event.get('subtype')}"
        return None

    async def parse_incoming(self, payload: Dict[str, Any]) -> ParsedDiscussion:
        if payload.get("type") != "event_callback":
            raise InputValidationError(
                f"Unsupported Slack payload type: {payload.get('type')}",
                fields=["type"], context={"source_type": self.source_type},
            )

        reason = self.ignore_reason(payload)
        if reason:
            raise InputValidationError(
                f"Slack event not processable: {reason}",
                fields=["event"], context={"source_type": self.source_type},
            )

        event = payload.get("event") or {}
        text = event.get("text") or ""
        channel = event.get("channel") or ""
        ts = event.get("ts") or ""
        workspace_id = payload.get("team_id") or event.get("team") or ""

        missing = []
        if not text.strip():
            missing.append("event.text")
        if not channel:
            missing.append("event.channel")
        if not ts:
            missing.append("event.ts")
        if not workspace_id:
            missing.append("team_id")
        if missing:
            raise InputValidationError(
                f"Slack event missing required fields: {', '.join(missing)}",
                fields=missing, context={"source_type": self.source_type},
            )

        team_id = self._team_resolver(workspace_id)
        if not team_id:
            raise InputValidationError(
                f"No team configured for Slack workspace {workspace_id}",
                fields=["team_id"], context={"source_type": self.source_type},
            )

        thread_ts = event.get("thread_ts") or ts
        user = event.get("user") or "unknown"
        participants = list(dict.fromkeys([user, *self._extract_mentions(text)]))

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=join_thread_id(channel, thread_ts),
            source_url=build_message_url(workspace_id, channel, thread_ts),
            team_id=team_id,
            author_handle=user,
            title=build_title(text),
            content=text,
            participants=participants,
            timestamp=_ts_to_datetime(ts),
            metadata={
                "channel_id": channel,
                "message_ts": ts,
                "thread_ts": thread_ts,
                "workspace_id": workspace_id,
                "event_type": event.get("type"),
            },
        )

    def _extract_mentions(self, text: str) -> List[str]:
        """Extract user mentions from text"""
        return MENTION_PATTERN.findall(text or "")

    # ------------------------------------------------------------------
    # Web API
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        config: SourceConfig,
        *,
        http_method: str = "GET",
        thread_id: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call a Web API method, raising on HTTP errors and ``ok: false``."""
        kwargs: Dict[str, Any] = {
            "headers": {"Authorization": f"Bearer {config.api_token}"},
        }
        if params:
            kwargs["params"] = params
        if json_body is not None:
            kwargs["json"] = json_body
        response = await self._request(
            http_method, f"{self._api_base}/{method}",
            thread_id=thread_id, timeout=timeout, **kwargs,
        )
        self._raise_for_status(response, thread_id)
        data = self._json(response, thread_id)
        if not data.get("ok"):
            self._raise_for_slack_error(method, data.get("error", "unknown_error"), thread_id)
        return data

    def _raise_for_slack_error(self, method: str, error: str, thread_id: Optional[str]) -> None:
        message = f"Slack {method} failed: {error}"
        if error in _NOT_FOUND_ERRORS:
            raise NotFoundError(message, source_type=self.source_type, thread_id=thread_id)
        if error in _RATE_LIMIT_ERRORS:
            raise TransientError(message, context={"source_type": self.source_type, "slack_error": error})
        if error in _AUTH_ERRORS:
            raise ConfigurationError(message, context={"source_type": self.source_type, "slack_error": error})
        raise AdapterError(
            message, source_type=self.source_type, thread_id=thread_id, retryable=False,
            context={"slack_error": error},
        )

    async def _latest_root_ts(self, channel: str, config: SourceConfig, thread_id: str) -> str:
        data = await self._call(
            "conversations.history", config,
            params={"channel": channel, "limit": 50}, thread_id=thread_id,
        )
        roots = [
            m for m in data.get("messages", [])
            if not m.get("subtype") and m.get("thread_ts", m.get("ts")) == m.get("ts")
        ]
        if not roots:
            raise NotFoundError(
                f"No root message found in channel {channel}",
                source_type=self.source_type, thread_id=thread_id,
            )
        latest = max(roots, key=lambda m: float(m["ts"]))
        return latest["ts"]

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        channel, thread_ts = split_thread_id(thread_id)
        if not channel:
            raise NotFoundError(
                f"Malformed Slack thread id: {thread_id!r}",
                source_type=self.source_type, thread_id=thread_id,
            )
        if thread_ts is None:
            thread_ts = await self._latest_root_ts(channel, config, thread_id)

        messages: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"channel": channel, "ts": thread_ts, "limit": 200}
            if cursor:
                params["cursor"] = cursor
            data = await self._call(
                "conversations.replies", config, params=params, thread_id=thread_id,
            )
            messages.extend(data.get("messages", []))
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

        root_raw = next((m for m in messages if m.get("ts") == thread_ts), None)
        if root_raw is None:
            raise NotFoundError(
                f"Thread root {thread_ts} not found in channel {channel}",
                source_type=self.source_type, thread_id=thread_id,
            )

        root = self._to_thread_message(root_raw)
        root_time = float(thread_ts)
        replies = [
            self._to_thread_message(m) for m in messages
            if m.get("ts") != thread_ts and float(m.get("ts", 0)) >= root_time
        ]
        participants = [root.author_handle] + [r.author_handle for r in replies]

        logger.info("Fetched Slack thread %s (%d replies)", thread_id, len(replies))

        return DiscussionThread(
            id=join_thread_id(channel, thread_ts),
            root_message=root,
            replies=replies,
            participants=participants,
            metadata={"channel_id": channel, "thread_ts": thread_ts},
        )

    def _to_thread_message(self, raw: Dict[str, Any]) -> ThreadMessage:
        attachments = [
            Attachment(
                url=f.get("url_private") or f.get("permalink") or "",
                file_name=f.get("name") or "",
                mime_type=f.get("mimetype"),
                size=f.get("size"),
            )
            for f in raw.get("files", []) or []
            if f.get("url_private") or f.get("permalink")
        ]
        return ThreadMessage(
            id=raw.get("ts", ""),
            author_handle=raw.get("user") or raw.get("bot_id") or "unknown",
            content=raw.get("text") or "",
            timestamp=_ts_to_datetime(raw.get("ts")),
            attachments=attachments,
        )

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        channel, thread_ts = split_thread_id(thread_id)
        if not thread_ts:
            logger.warning("Cannot reply to Slack thread %s without a thread ts", thread_id)
            return False
        try:
            await self._call(
                "chat.postMessage", config, http_method="POST", timeout=REPLY_TIMEOUT,
                json_body={"channel": channel, "thread_ts": thread_ts, "text": message},
                thread_id=thread_id,
            )
            return True
        except DiscubotError as e:
            logger.warning("Failed to post Slack reply to %s: %s", thread_id, e)
            return False

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        emoji = self.indicator_for(status)
        if emoji is None:
            return True
        channel, thread_ts = split_thread_id(thread_id)
        if not thread_ts:
            return False
        try:
            await self._call(
                "reactions.add", config, http_method="POST", timeout=REPLY_TIMEOUT,
                json_body={"channel": channel, "timestamp": thread_ts, "name": emoji},
                thread_id=thread_id,
            )
            return True
        except AdapterError as e:
            if e.context.get("slack_error") == "already_reacted":
                return True
            logger.warning("Failed to add Slack reaction %s to %s: %s", emoji, thread_id, e)
            return False
        except DiscubotError as e:
            logger.warning("Failed to add Slack reaction %s to %s: %s", emoji, thread_id, e)
            return False

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        result = self._validate_common(config)
        token = config.api_token or ""
        if token and not (token.startswith("xoxb-") or token.startswith("xoxp-")):
            result.warnings.append("Slack token should start with xoxb- or xoxp-")
        if not config.bot_user_id:
            result.warnings.append("No bot user id in source metadata; bot mentions will not be filtered")
        result.valid = not result.errors
        return result

    async def test_connection(self, config: SourceConfig) -> bool:
        try:
            data = await self._call("auth.test", config, http_method="POST", timeout=REPLY_TIMEOUT)
            logger.info("Slack connection OK (team: %s)", data.get("team"))
            return True
        except DiscubotError as e:
            logger.warning("Slack connection test failed: %s", e)
            return False

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Verify Slack request signature.

        Uses X-Slack-Signature and X-Slack-Request-Timestamp; requests older
        than five minutes are rejected.
        """
        if not self._signing_secret:
            # Skip verification if no secret configured
            return True

        signature = headers.get("x-slack-signature") or ""
        timestamp = headers.get("x-slack-request-timestamp") or ""
        if not signature or not timestamp:
            return False

        try:
            ts = int(timestamp)
            if abs(time.time() - ts) > 300:
                return False
        except ValueError:
            return False

        sig_basestring = f"v0:{timestamp}:{body.decode('utf-8')}"
        expected_sig = "v0=" + hmac.new(
            self._signing_secret.encode("utf-8"),
            sig_basestring.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected_sig, signature)

    def is_url_verification(self, payload: Dict[str, Any]) -> bool:
        """Check if request is URL verification"""
        return payload.get("type") == "url_verification"

    def get_challenge(self, payload: Dict[str, Any]) -> Optional[str]:
        """Get challenge for URL verification"""
        if self.is_url_verification(payload):
            return payload.get("challenge")
        return None
