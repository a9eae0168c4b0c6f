"""Tests for the Notion task sink."""

import json

import httpx
import pytest

from discubot.common.errors import TaskSinkError
from discubot.common.schemas import AISummary, DetectedTask, Known
from discubot.pipeline.identity import IdentityMapping, InMemoryIdentityStore
from discubot.pipeline.task_sink import (
    MAX_CHILD_BLOCKS,
    NotionTaskSink,
    TaskContext,
    build_page_blocks,
    classify_response,
)
from discubot.pipeline.throttle import RateLimiter

from conftest import FakeSleep, make_config, make_thread, mock_client


def make_context(**overrides):
    data = dict(
        thread=make_thread(replies=[("maarten", "I can take it")]),
        summary=AISummary(summary="Login is broken on Safari.", key_points=["Safari only"], sentiment="negative"),
        source_type="slack",
        source_url="https://slack.com/archives/C123/p1700000000000100",
        team_id="team-1",
    )
    data.update(overrides)
    return TaskContext(**data)


def notion_api(statuses=None, headers=None):
    """Page creations answer with successive ``statuses`` (default all 200)."""
    statuses = list(statuses or [])
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={
                "title": [{"plain_text": "Engineering "}, {"plain_text": "Tasks"}],
                "properties": {
                    "Name": {"type": "title", "title": {}},
                    "Priority": {"type": "select", "select": {"options": [{"name": "P1"}, {"name": "P2"}]}},
                    "Owner": {"type": "people", "people": {}},
                },
            })
        status = statuses.pop(0) if statuses else 200
        if status != 200:
            return httpx.Response(status, json={"message": "nope"}, headers=headers or {})
        n = sum(1 for c in calls if c.method == "POST")
        return httpx.Response(200, json={"id": f"page-{n}", "url": f"https://notion.so/page-{n}"})

    return mock_client(handler), calls


def make_sink(client, identities=None, sleep=None):
    return NotionTaskSink(
        http_client=client,
        throttle=RateLimiter(0.0),
        identity_store=identities,
        sleep=sleep or FakeSleep(),
    )


def block_texts(blocks):
    texts = []
    for block in blocks:
        body = block[block["type"]]
        texts.append("".join(
            item["text"]["content"] for item in body.get("rich_text", []) if item["type"] == "text"
        ))
    return texts


class TestClassifyResponse:
    def _classify(self, status, headers=None):
        return classify_response(httpx.Response(status, json={"message": "boom"}, headers=headers or {}))

    def test_auth(self):
        error = self._classify(401)
        assert error.code == "auth_invalid" and not error.retryable

    def test_not_found(self):
        assert self._classify(404).code == "destination_not_found"

    def test_rate_limited_with_retry_after(self):
        error = self._classify(429, {"retry-after": "3"})
        assert error.code == "rate_limited" and error.retryable
        assert error.retry_after == 3.0

    def test_validation(self):
        error = self._classify(400)
        assert error.code == "validation" and not error.retryable

    def test_server_error_retryable(self):
        assert self._classify(502).retryable
        assert not self._classify(409).retryable


class TestPageBlocks:
    def test_layout(self):
        task = DetectedTask(
            title="Fix Safari login",
            description="Password validation fails.",
            action_items=["Reproduce", "Patch"],
            priority=Known("high"),
            tags=["auth"],
        )
        texts = block_texts(build_page_blocks(task, make_context()))

        assert texts[0] == "AI Summary: Login is broken on Safari."
        assert texts[1] == "Password validation fails."
        assert "📋 Key Action Items" in texts
        assert "Reproduce" in texts and "Patch" in texts
        assert "Source: Slack" in texts
        assert "Messages: 2" in texts
        assert "Priority: high" in texts
        assert "Sentiment: negative" in texts
        assert "Tags: auth" in texts
        assert texts[-1] == "🔗 View Discussion in Slack"

    def test_unknown_fields_left_out_of_metadata(self):
        texts = block_texts(build_page_blocks(DetectedTask(title="Investigate"), make_context()))
        assert not any(t.startswith(("Priority:", "Type:", "Assignee:")) for t in texts)

    def test_key_points_used_without_action_items(self):
        texts = block_texts(build_page_blocks(DetectedTask(title="Investigate"), make_context()))
        assert "Safari only" in texts

    def test_participants_mentioned_when_mapped(self):
        blocks = build_page_blocks(DetectedTask(title="Fix"), make_context(), {"maarten": "notion-9"})
        participants = next(b for b in blocks if block_texts([b])[0].startswith("Participants"))
        mentions = [i for i in participants["paragraph"]["rich_text"] if i["type"] == "mention"]
        assert mentions == [{"type": "mention", "mention": {"type": "user", "user": {"id": "notion-9"}}}]

    def test_long_transcript_chunked_and_capped(self):
        thread = make_thread(root="word " * 100000)
        blocks = build_page_blocks(DetectedTask(title="Fix"), make_context(thread=thread))
        assert len(blocks) <= MAX_CHILD_BLOCKS
        assert all(len(t) <= 2000 for t in block_texts(blocks))

    def test_slack_emoji_codes_converted(self):
        thread = make_thread(replies=[("maarten", ":white_check_mark: fixed on staging")])
        task = DetectedTask(title="Fix", action_items=[":eyes: verify on Safari"])
        texts = block_texts(build_page_blocks(task, make_context(thread=thread)))

        assert "👀 verify on Safari" in texts
        assert any("✅ fixed on staging" in t for t in texts)
        assert not any(":white_check_mark:" in t for t in texts)


class TestCreateTasks:
    @pytest.mark.asyncio
    async def test_creates_page_with_properties(self):
        client, calls = notion_api()
        sink = make_sink(client)
        task = DetectedTask(title="Fix Safari login", priority=Known("urgent"))

        result = await sink.create_tasks(make_config(), [task], make_context())

        assert [r.url for r in result.created] == ["https://notion.so/page-1"]
        request = calls[0]
        assert request.url.path == "/v1/pages"
        assert request.headers["Authorization"] == "Bearer secret_notion_token"
        assert request.headers["Notion-Version"] == "2022-06-28"
        body = json.loads(request.content)
        assert body["parent"] == {"database_id": "db-123"}
        assert body["properties"]["Priority"] == {"select": {"name": "P1"}}
        assert body["children"]

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_going(self):
        client, _ = notion_api(statuses=[200, 400, 200])
        sink = make_sink(client)
        tasks = [DetectedTask(title=t) for t in ("One", "Two", "Three")]

        result = await sink.create_tasks(make_config(), tasks, make_context())

        assert [r.title for r in result.created] == ["One", "Three"]
        assert len(result.errors) == 1
        assert result.errors[0].title == "Two"
        assert result.errors[0].status_code == 400
        assert not result.errors[0].retryable

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        client, calls = notion_api(statuses=[429, 200], headers={"retry-after": "2"})
        sleep = FakeSleep()
        sink = make_sink(client, sleep=sleep)

        result = await sink.create_tasks(make_config(), [DetectedTask(title="One")], make_context())

        assert len(result.created) == 1
        assert len(calls) == 2
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_mapping_warnings_reported(self):
        client, _ = notion_api()
        task = DetectedTask(title="Fix", assignee=Known("maarten"))
        result = await make_sink(client).create_tasks(make_config(), [task], make_context())
        assert result.warnings == ["No Notion user mapped for assignee 'maarten'"]

    @pytest.mark.asyncio
    async def test_identities_resolved_for_assignee(self):
        client, calls = notion_api()
        store = InMemoryIdentityStore([
            IdentityMapping(team_id="team-1", source_type="slack", source_user_id="maarten", notion_user_id="notion-9"),
        ])
        task = DetectedTask(title="Fix", assignee=Known("maarten"))

        result = await make_sink(client, identities=store).create_tasks(make_config(), [task], make_context())

        assert result.warnings == []
        body = json.loads(calls[0].content)
        assert body["properties"]["Assignee"] == {"people": [{"object": "user", "id": "notion-9"}]}

    @pytest.mark.asyncio
    async def test_malformed_success_body_keeps_going(self):
        posts = []

        def handler(request):
            posts.append(request)
            if len(posts) == 2:
                return httpx.Response(200, json={"object": "error"})
            if len(posts) == 4:
                return httpx.Response(200, text="<html>bad gateway</html>")
            return httpx.Response(200, json={"id": f"page-{len(posts)}", "url": ""})

        sink = make_sink(mock_client(handler))
        tasks = [DetectedTask(title=t) for t in ("One", "Two", "Three", "Four")]

        result = await sink.create_tasks(make_config(), tasks, make_context())

        assert len(posts) == 4
        assert [(r.id, r.index) for r in result.created] == [("page-1", 0), ("page-3", 2)]
        assert [e.title for e in result.errors] == ["Two", "Four"]
        assert not any(e.retryable for e in result.errors)

    @pytest.mark.asyncio
    async def test_page_creations_are_spaced_across_batches(self):
        now = [100.0]
        stamps = []

        async def advance(delay):
            now[0] += delay

        def handler(request):
            stamps.append(now[0])
            return httpx.Response(200, json={"id": f"page-{len(stamps)}", "url": ""})

        sink = NotionTaskSink(
            http_client=mock_client(handler),
            throttle=RateLimiter(0.2, clock=lambda: now[0], sleep=advance),
            sleep=FakeSleep(),
        )

        await sink.create_tasks(make_config(), [DetectedTask(title="One")], make_context())
        await sink.create_tasks(make_config(), [DetectedTask(title="Two")], make_context())

        assert len(stamps) == 2
        assert stamps[1] - stamps[0] >= 0.2

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("down")

        sink = make_sink(mock_client(handler))
        with pytest.raises(TaskSinkError) as exc_info:
            await sink.create_task(make_config(), DetectedTask(title="One"), make_context())
        assert exc_info.value.retryable
        assert exc_info.value.code == "network"


class TestSchemaAndConnection:
    @pytest.mark.asyncio
    async def test_fetch_schema(self):
        client, calls = notion_api()
        title, properties = await make_sink(client).fetch_schema(make_config())

        assert calls[0].url.path == "/v1/databases/db-123"
        assert title == "Engineering Tasks"
        priority = next(p for p in properties if p.name == "Priority")
        assert priority.type == "select"
        assert priority.options == ["P1", "P2"]

    @pytest.mark.asyncio
    async def test_connection_ok(self):
        client, _ = notion_api()
        result = await make_sink(client).test_connection(make_config())
        assert result.connected
        assert result.schema_title == "Engineering Tasks"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [
        (401, "auth_invalid"),
        (404, "destination_not_found"),
        (500, "generic"),
    ])
    async def test_connection_failures(self, status, code):
        client = mock_client(lambda request: httpx.Response(status, json={"message": "x"}))
        sink = NotionTaskSink(http_client=client, max_attempts=1)
        result = await sink.test_connection(make_config())
        assert not result.connected
        assert result.error_code == code
        assert result.error
