"""Tests for the Notion comment adapter."""

import hashlib
import hmac
import json

import httpx
import pytest

from discubot.common.errors import InputValidationError, NotFoundError
from discubot.common.schemas import DiscussionStatus
from discubot.pipeline.adapters.notion import (
    DEFAULT_TRIGGER_KEYWORD,
    NotionCommentAdapter,
    WorkspaceRateLimiter,
    check_for_trigger,
)

from conftest import T0, make_config, mock_client

NOW = T0.timestamp() + 60


def notion_config(**overrides):
    data = dict(
        source_type="notion",
        api_token="secret_notion_token",
        source_metadata={"workspace_id": "ws-1"},
    )
    data.update(overrides)
    return make_config(**data)


def comment(comment_id, text, minutes=0, author="user-001", discussion="discussion-789"):
    return {
        "object": "comment",
        "id": comment_id,
        "parent": {"type": "page_id", "page_id": "page-456"},
        "discussion_id": discussion,
        "rich_text": [{"type": "text", "plain_text": text}],
        "created_time": f"2025-01-15T10:{minutes:02d}:00.000Z",
        "created_by": {"object": "user", "id": author},
    }


def comment_event(**data_overrides):
    data = {
        "id": "comment-123",
        "parent": {"type": "page_id", "page_id": "page-456"},
        "discussion_id": "discussion-789",
    }
    data.update(data_overrides)
    return {
        "type": "comment.created",
        "timestamp": "2025-01-15T10:00:30.000Z",
        "workspace_id": "ws-1",
        "data": data,
    }


def notion_api(comments=None, pages=None, status=200):
    """Mock Notion comments API. ``pages`` overrides list results page by page."""
    comments = comments if comments is not None else [
        comment("comment-123", "Hey @discubot the export button is broken"),
        comment("comment-124", "Seeing it on Safari too", minutes=5, author="user-002"),
    ]
    pages = list(pages or [])
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if status != 200:
            return httpx.Response(status, json={"object": "error", "message": "nope"})
        path = request.url.path
        if request.method == "POST":
            return httpx.Response(200, json={"object": "comment", "id": "new-comment"})
        if path.endswith("/users/me"):
            return httpx.Response(200, json={"object": "user", "id": "bot-1", "name": "Discubot"})
        if path.endswith("/comments"):
            if pages:
                return httpx.Response(200, json=pages.pop(0))
            return httpx.Response(200, json={"object": "list", "results": comments, "has_more": False})
        comment_id = path.rsplit("/", 1)[-1]
        found = next((c for c in comments if c["id"] == comment_id), None)
        if found is None:
            return httpx.Response(404, json={"object": "error", "message": "not found"})
        return httpx.Response(200, json=found)

    return mock_client(handler), calls


def make_adapter(client=None, config=None, **kwargs):
    config = config or notion_config()
    return NotionCommentAdapter(
        config_resolver=lambda ws: config if ws == "ws-1" else None,
        http_client=client,
        clock=lambda: NOW,
        **kwargs,
    )


class TestCheckForTrigger:
    def test_case_insensitive(self):
        assert check_for_trigger([{"type": "text", "plain_text": "Hey @DiScUbOt please help"}])

    def test_split_across_items(self):
        rich_text = [
            {"type": "text", "plain_text": "Hey "},
            {"type": "text", "plain_text": "@discubot"},
            {"type": "text", "plain_text": " please help"},
        ]
        assert check_for_trigger(rich_text)

    def test_custom_keyword(self):
        assert check_for_trigger([{"type": "text", "plain_text": "#TODO fix this"}], "#todo")
        assert not check_for_trigger([{"type": "text", "plain_text": "@discubot fix this"}], "#todo")

    def test_missing_text(self):
        assert not check_for_trigger([])
        assert not check_for_trigger(None)

    def test_default_keyword(self):
        assert DEFAULT_TRIGGER_KEYWORD == "@discubot"


class TestWebhookFiltering:
    def test_url_verification(self):
        adapter = make_adapter()
        assert adapter.is_url_verification({"verification_token": "tok-1"})
        assert adapter.get_challenge({"verification_token": "tok-1"}) == "tok-1"
        assert not adapter.is_url_verification(comment_event())

    @pytest.mark.parametrize("event_type", ["page.updated", "comment.updated", "database.updated"])
    def test_other_events_ignored(self, event_type):
        payload = dict(comment_event(), type=event_type)
        assert "only 'comment.created'" in make_adapter().ignore_reason(payload)

    def test_stale_event_ignored(self):
        payload = dict(comment_event(), timestamp="2025-01-15T09:00:00Z")
        assert make_adapter().ignore_reason(payload) == "event timestamp outside tolerance window"

    def test_fresh_event_and_missing_timestamp_accepted(self):
        adapter = make_adapter()
        assert adapter.ignore_reason(comment_event()) is None
        payload = comment_event()
        del payload["timestamp"]
        assert adapter.ignore_reason(payload) is None


class TestParseIncoming:
    @pytest.mark.asyncio
    async def test_triggered_comment(self):
        client, calls = notion_api()
        parsed = await make_adapter(client).parse_incoming(comment_event())

        assert parsed.source_type == "notion"
        assert parsed.source_thread_id == "page-456:discussion-789"
        assert parsed.team_id == "team-1"
        assert parsed.author_handle == "user-001"
        assert parsed.content == "Hey @discubot the export button is broken"
        assert parsed.source_url == "https://www.notion.so/page456?d=discussion789"
        assert parsed.metadata["triggered"] is True
        assert parsed.metadata["comment_id"] == "comment-123"
        assert calls[0].url.path == "/v1/comments/comment-123"
        assert calls[0].headers["Authorization"] == "Bearer secret_notion_token"

    @pytest.mark.asyncio
    async def test_comment_without_keyword_not_triggered(self):
        client, _ = notion_api(comments=[comment("comment-123", "Just a regular comment")])
        parsed = await make_adapter(client).parse_incoming(comment_event())
        assert parsed.metadata["triggered"] is False

    @pytest.mark.asyncio
    async def test_custom_keyword_from_config(self):
        client, _ = notion_api(comments=[comment("comment-123", "#todo ship the fix")])
        config = notion_config(source_metadata={"workspace_id": "ws-1", "trigger_keyword": "#todo"})
        parsed = await make_adapter(client, config=config).parse_incoming(comment_event())
        assert parsed.metadata["triggered"] is True

    @pytest.mark.asyncio
    async def test_block_parent(self):
        client, _ = notion_api()
        parsed = await make_adapter(client).parse_incoming(
            comment_event(parent={"type": "block_id", "block_id": "block-9"})
        )
        assert parsed.source_thread_id == "block-9:discussion-789"
        assert parsed.metadata["parent_type"] == "block_id"

    @pytest.mark.asyncio
    async def test_missing_ids_rejected_before_network(self):
        client, calls = notion_api()
        with pytest.raises(InputValidationError) as exc_info:
            await make_adapter(client).parse_incoming(comment_event(id="", parent={"type": "page_id"}))
        assert exc_info.value.fields == ["data.id", "data.parent"]
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_workspace_rejected(self):
        payload = dict(comment_event(), workspace_id="ws-other")
        with pytest.raises(InputValidationError) as exc_info:
            await make_adapter(notion_api()[0]).parse_incoming(payload)
        assert exc_info.value.fields == ["workspace_id"]

    @pytest.mark.asyncio
    async def test_deleted_comment_is_not_found(self):
        client, _ = notion_api(comments=[])
        with pytest.raises(NotFoundError):
            await make_adapter(client).parse_incoming(comment_event())


class TestFetchThread:
    @pytest.mark.asyncio
    async def test_root_and_replies(self):
        client, calls = notion_api()
        thread = await make_adapter(client).fetch_thread("page-456:discussion-789", notion_config())

        assert thread.root_message.content == "Hey @discubot the export button is broken"
        assert [r.content for r in thread.replies] == ["Seeing it on Safari too"]
        assert thread.participants == ["user-001", "user-002"]
        assert thread.metadata == {"page_id": "page-456", "discussion_id": "discussion-789"}
        assert calls[0].url.params["block_id"] == "page-456"

    @pytest.mark.asyncio
    async def test_filters_other_discussions_and_sorts(self):
        client, _ = notion_api(comments=[
            comment("c2", "Later", minutes=5),
            comment("c9", "Elsewhere", minutes=1, discussion="other"),
            comment("c1", "Earlier"),
        ])
        thread = await make_adapter(client).fetch_thread("page-456:discussion-789", notion_config())
        assert thread.root_message.content == "Earlier"
        assert [r.content for r in thread.replies] == ["Later"]

    @pytest.mark.asyncio
    async def test_follows_pagination(self):
        client, calls = notion_api(pages=[
            {"results": [comment("c1", "First")], "has_more": True, "next_cursor": "cursor-abc"},
            {"results": [comment("c2", "Second", minutes=5)], "has_more": False, "next_cursor": None},
        ])
        thread = await make_adapter(client).fetch_thread("page-456:discussion-789", notion_config())

        assert [m.content for m in thread.messages] == ["First", "Second"]
        assert calls[1].url.params["start_cursor"] == "cursor-abc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("thread_id", ["invalid-format", "page-456:", ":discussion-789"])
    async def test_malformed_thread_id(self, thread_id):
        with pytest.raises(NotFoundError):
            await make_adapter().fetch_thread(thread_id, notion_config())

    @pytest.mark.asyncio
    async def test_empty_discussion_is_not_found(self):
        client, _ = notion_api(comments=[])
        with pytest.raises(NotFoundError) as exc_info:
            await make_adapter(client).fetch_thread("page-456:discussion-789", notion_config())
        assert "No comments found" in str(exc_info.value)


class TestReplyAndStatus:
    @pytest.mark.asyncio
    async def test_reply_links_urls(self):
        client, calls = notion_api()
        ok = await make_adapter(client).post_reply(
            "page-456:discussion-789", "✅ Task created in Notion\n🔗 https://notion.so/p1", notion_config()
        )

        assert ok
        body = json.loads(calls[-1].content)
        assert body["discussion_id"] == "discussion-789"
        assert body["rich_text"][-1]["text"] == {
            "content": "https://notion.so/p1",
            "link": {"url": "https://notion.so/p1"},
        }

    @pytest.mark.asyncio
    async def test_reply_failure_returns_false(self):
        client, _ = notion_api(status=500)
        assert not await make_adapter(client).post_reply("page-456:discussion-789", "hi", notion_config())

    @pytest.mark.asyncio
    async def test_reply_needs_discussion_id(self):
        client, calls = notion_api()
        assert not await make_adapter(client).post_reply("page-456", "hi", notion_config())
        assert calls == []

    @pytest.mark.asyncio
    async def test_status_is_a_no_op(self):
        client, calls = notion_api()
        adapter = make_adapter(client)
        for status in DiscussionStatus:
            assert await adapter.update_status("page-456:discussion-789", status, notion_config())
        assert calls == []


class TestConfigAndConnection:
    def test_notion_token_stands_in_for_api_token(self):
        result = make_adapter().validate_config(notion_config(api_token=""))
        assert result.valid
        assert result.warnings == ["No per-config Anthropic key; the server-wide key will be used"]

    def test_token_format_warning(self):
        result = make_adapter().validate_config(notion_config(api_token="invalid_token_format"))
        assert result.valid
        assert 'Notion API token should start with "secret_" or "ntn_"' in result.warnings

    def test_missing_workspace_warns(self):
        result = make_adapter().validate_config(notion_config(source_metadata={}))
        assert any("workspace id" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_connection(self):
        client, calls = notion_api()
        assert await make_adapter(client).test_connection(notion_config())
        assert calls[0].url.path == "/v1/users/me"

    @pytest.mark.asyncio
    async def test_connection_rejected(self):
        client, _ = notion_api(status=401)
        assert not await make_adapter(client).test_connection(notion_config())

    @pytest.mark.asyncio
    async def test_connection_without_token(self):
        client, calls = notion_api()
        config = notion_config(api_token="", notion_token="")
        assert not await make_adapter(client).test_connection(config)
        assert calls == []


class TestSignature:
    BODY = b'{"type":"comment.created"}'

    def _sign(self, secret="whsec"):
        return hmac.new(secret.encode(), self.BODY, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        adapter = make_adapter(webhook_secret="whsec")
        assert adapter.verify_signature(self.BODY, {"x-notion-signature": f"sha256={self._sign()}"})
        assert adapter.verify_signature(self.BODY, {"x-notion-signature": f"v1={self._sign()}"})
        assert adapter.verify_signature(self.BODY, {"x-notion-signature": self._sign()})

    def test_wrong_or_missing_signature(self):
        adapter = make_adapter(webhook_secret="whsec")
        assert not adapter.verify_signature(self.BODY, {"x-notion-signature": f"sha256={self._sign('other')}"})
        assert not adapter.verify_signature(self.BODY, {})

    def test_no_secret_skips_verification(self):
        assert make_adapter().verify_signature(self.BODY, {})


class TestWorkspaceRateLimiter:
    def test_window(self):
        now = [0.0]
        limiter = WorkspaceRateLimiter(max_requests=2, window=60.0, clock=lambda: now[0])

        assert limiter.allow("ws-1")
        assert limiter.allow("ws-1")
        assert not limiter.allow("ws-1")
        assert limiter.allow("ws-2")

        now[0] = 61.0
        assert limiter.allow("ws-1")
