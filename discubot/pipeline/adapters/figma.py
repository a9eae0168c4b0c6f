"""
Figma Adapter

Figma comment notifications arrive as inbound email (Mailgun routes). The
thread itself is loaded from the Figma REST comments API.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from ...common.errors import DiscubotError, InputValidationError, NotFoundError
from ...common.schemas import (
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
    ThreadMessage,
)
from .base import (
    DEFAULT_TEAM,
    FETCH_TIMEOUT,
    REPLY_TIMEOUT,
    SourceAdapter,
    ValidationResult,
    join_thread_id,
    split_thread_id,
)
from .email_parser import author_display_name, parse_figma_email, recipient_slug

logger = logging.getLogger("discubot.pipeline.adapters.figma")

FIGMA_API_BASE = "https://api.figma.com/v1"

MIN_TOKEN_LENGTH = 20


def _parse_created_at(raw: Optional[str]) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class FigmaAdapter(SourceAdapter):
    """
    Adapter for Figma design-file comments.

    Thread ids are ``<fileKey>:<commentId>``; the comment id is often not in
    the notification email, in which case the most recent root comment on
    the file is used.
    """

    source_type = "figma"

    status_indicators = {
        DiscussionStatus.PENDING: ":eyes:",
        DiscussionStatus.PROCESSING: ":hourglass:",
        DiscussionStatus.ANALYZED: ":robot:",
        DiscussionStatus.COMPLETED: ":white_check_mark:",
        DiscussionStatus.FAILED: ":x:",
        DiscussionStatus.RETRYING: ":arrows_counterclockwise:",
    }

    def __init__(
        self,
        signing_key: str = "",
        team_resolver: Optional[Callable[[str], Optional[str]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = FIGMA_API_BASE,
    ):
        """
        Initialize Figma adapter.

        Args:
            signing_key: Mailgun webhook signing key
            team_resolver: Maps a recipient slug to a team id; unmatched
                slugs resolve to the ``default`` team
            http_client: Shared httpx client
            api_base: REST API base URL
        """
        super().__init__(http_client)
        self._signing_key = signing_key
        self._team_resolver = team_resolver or (lambda slug: slug)
        self._api_base = api_base.rstrip("/")

    # ------------------------------------------------------------------
    # Webhook parsing
    # ------------------------------------------------------------------

    def resolve_team(self, recipient: str) -> str:
        slug = recipient_slug(recipient)
        if not slug:
            return DEFAULT_TEAM
        return self._team_resolver(slug) or DEFAULT_TEAM

    async def parse_incoming(self, payload: Dict[str, Any]) -> ParsedDiscussion:
        parsed = parse_figma_email(payload)

        missing = []
        if not parsed.text or not parsed.text.strip():
            missing.append("body")
        if not parsed.file_key:
            missing.append("file_key")
        if missing:
            raise InputValidationError(
                f"Figma email missing required fields: {', '.join(missing)}",
                fields=missing, context={"source_type": self.source_type},
            )

        recipient = payload.get("recipient") or ""
        team_id = self.resolve_team(recipient)
        author = author_display_name(parsed.author or "") or "unknown"

        return ParsedDiscussion(
            source_type=self.source_type,
            source_thread_id=join_thread_id(parsed.file_key, parsed.comment_id),
            source_url=parsed.file_url or f"https://www.figma.com/file/{parsed.file_key}",
            team_id=team_id,
            author_handle=author,
            title=parsed.subject or "Figma Comment",
            content=parsed.text,
            participants=[author],
            timestamp=parsed.timestamp or datetime.now(timezone.utc),
            metadata={
                "file_key": parsed.file_key,
                "comment_id": parsed.comment_id,
                "file_name": parsed.file_name,
                "email_type": parsed.email_type,
                "links": parsed.links,
                "email_slug": recipient_slug(recipient),
                "recipient_email": recipient,
            },
        )

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------

    def _headers(self, config: SourceConfig) -> Dict[str, str]:
        return {"X-Figma-Token": config.api_token}

    async def _list_comments(self, file_key: str, config: SourceConfig, thread_id: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", f"{self._api_base}/files/{file_key}/comments",
            headers=self._headers(config), thread_id=thread_id, timeout=FETCH_TIMEOUT,
        )
        self._raise_for_status(response, thread_id)
        return self._json(response, thread_id).get("comments", [])

    @staticmethod
    def find_most_recent_root(comments: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        roots = [c for c in comments if not c.get("parent_id")]
        if not roots:
            return None
        return max(roots, key=lambda c: _parse_created_at(c.get("created_at")))

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        file_key, comment_id = split_thread_id(thread_id)
        if not file_key:
            raise NotFoundError(
                f"Malformed Figma thread id: {thread_id!r}",
                source_type=self.source_type, thread_id=thread_id,
            )

        comments = await self._list_comments(file_key, config, thread_id)
        by_id = {c.get("id"): c for c in comments}

        if comment_id:
            root = by_id.get(comment_id)
            # A reply id resolves to its thread's root
            if root is not None and root.get("parent_id"):
                root = by_id.get(root["parent_id"])
        else:
            root = self.find_most_recent_root(comments)

        if root is None:
            raise NotFoundError(
                "Comment not found in file",
                source_type=self.source_type, thread_id=thread_id,
            )

        root_message = self._to_thread_message(root)
        replies = [
            self._to_thread_message(c) for c in comments
            if c.get("parent_id") == root.get("id")
        ]
        replies = [r for r in replies if r.timestamp >= root_message.timestamp]

        logger.info("Fetched Figma thread %s:%s (%d replies)", file_key, root.get("id"), len(replies))

        return DiscussionThread(
            id=join_thread_id(file_key, root.get("id")),
            root_message=root_message,
            replies=replies,
            participants=[root_message.author_handle] + [r.author_handle for r in replies],
            metadata={
                "file_key": file_key,
                "comment_id": root.get("id"),
                "resolved": bool(root.get("resolved_at")),
                "node_id": (root.get("client_meta") or {}).get("node_id"),
            },
        )

    def _to_thread_message(self, comment: Dict[str, Any]) -> ThreadMessage:
        user = comment.get("user") or {}
        return ThreadMessage(
            id=str(comment.get("id", "")),
            author_handle=user.get("handle") or user.get("id") or "unknown",
            content=comment.get("message") or "",
            timestamp=_parse_created_at(comment.get("created_at")),
        )

    async def _root_comment_id(self, thread_id: str, config: SourceConfig) -> str:
        file_key, comment_id = split_thread_id(thread_id)
        if comment_id:
            return comment_id
        thread = await self.fetch_thread(thread_id, config)
        return thread.root_message.id

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        file_key, _ = split_thread_id(thread_id)
        try:
            comment_id = await self._root_comment_id(thread_id, config)
            response = await self._request(
                "POST", f"{self._api_base}/files/{file_key}/comments",
                headers=self._headers(config), timeout=REPLY_TIMEOUT, thread_id=thread_id,
                json={"message": message, "comment_id": comment_id},
            )
            self._raise_for_status(response, thread_id)
            return True
        except DiscubotError as e:
            logger.warning("Failed to post Figma reply to %s: %s", thread_id, e)
            return False

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        emoji = self.indicator_for(status)
        if emoji is None:
            return True
        file_key, _ = split_thread_id(thread_id)
        try:
            comment_id = await self._root_comment_id(thread_id, config)
            response = await self._request(
                "POST", f"{self._api_base}/files/{file_key}/comments/{comment_id}/reactions",
                headers=self._headers(config), timeout=REPLY_TIMEOUT, thread_id=thread_id,
                json={"emoji": emoji},
            )
            self._raise_for_status(response, thread_id)
            return True
        except DiscubotError as e:
            logger.warning("Failed to add Figma reaction %s to %s: %s", emoji, thread_id, e)
            return False

    async def remove_reaction(self, thread_id: str, emoji: str, config: SourceConfig) -> bool:
        """Remove one of our reactions, e.g. the pending indicator once done."""
        file_key, comment_id = split_thread_id(thread_id)
        if not comment_id:
            return False
        try:
            response = await self._request(
                "DELETE", f"{self._api_base}/files/{file_key}/comments/{comment_id}/reactions",
                headers=self._headers(config), timeout=REPLY_TIMEOUT, thread_id=thread_id,
                params={"emoji": emoji},
            )
            self._raise_for_status(response, thread_id)
            return True
        except DiscubotError as e:
            logger.warning("Failed to remove Figma reaction %s from %s: %s", emoji, thread_id, e)
            return False

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        result = self._validate_common(config)
        if config.api_token and len(config.api_token) < MIN_TOKEN_LENGTH:
            result.warnings.append("Figma token looks too short")
        if not config.email_slug:
            result.warnings.append("No email slug; notifications will route to the default team")
        if not config.bot_handle:
            result.warnings.append("No bot handle in source metadata; bot mentions will not be filtered")
        result.valid = not result.errors
        return result

    async def test_connection(self, config: SourceConfig) -> bool:
        try:
            response = await self._request(
                "GET", f"{self._api_base}/me", headers=self._headers(config), timeout=REPLY_TIMEOUT,
            )
            self._raise_for_status(response)
            logger.info("Figma connection OK (user: %s)", self._json(response).get("handle"))
            return True
        except DiscubotError as e:
            logger.warning("Figma connection test failed: %s", e)
            return False

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Verify a Mailgun signature: HMAC-SHA256 of timestamp + token, keyed
        with the webhook signing key. The fields travel in the form body.
        """
        if not self._signing_key:
            return True

        form = form or {}
        timestamp = str(form.get("timestamp") or "")
        token = str(form.get("token") or "")
        signature = str(form.get("signature") or "")
        if not (timestamp and token and signature):
            return False

        try:
            if abs(time.time() - int(timestamp)) > 300:
                return False
        except ValueError:
            return False

        expected = hmac.new(
            self._signing_key.encode("utf-8"),
            f"{timestamp}{token}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)
