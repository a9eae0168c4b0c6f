"""Tests for the webhook and operations endpoints."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from discubot.common.schemas import DiscussionStatus, Job, PipelineStage, StageStatus
from discubot.pipeline import server
from discubot.pipeline.adapters import FigmaAdapter, NotionCommentAdapter, ResendAdapter, SlackAdapter
from discubot.pipeline.stores import InMemoryJobStore

from conftest import make_config, mock_client


@pytest.fixture
def processor(monkeypatch):
    fake = SimpleNamespace(
        process_discussion=AsyncMock(return_value=SimpleNamespace(deferred=False, job_id="job_1")),
        resume_job=AsyncMock(),
    )
    monkeypatch.setattr(server, "processor", fake)
    return fake


@pytest.fixture
def adapters(monkeypatch):
    slack = SlackAdapter()
    figma = FigmaAdapter(team_resolver=lambda slug: "team-1")
    resend = ResendAdapter(figma)
    monkeypatch.setattr(server, "slack_adapter", slack)
    monkeypatch.setattr(server, "figma_adapter", figma)
    monkeypatch.setattr(server, "resend_adapter", resend)
    monkeypatch.setattr(server, "adapters", {"slack": slack, "figma": figma})
    return slack


@pytest.fixture
def job_store(monkeypatch):
    store = InMemoryJobStore()
    monkeypatch.setattr(server, "job_store", store)
    return store


def client():
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=server.app), base_url="http://test")


def slack_event(**overrides):
    event = {"type": "message", "channel": "C123", "user": "U111",
             "text": "<@UBOT> login is broken", "ts": "1700000000.000100"}
    event.update(overrides)
    return {"type": "event_callback", "team_id": "T1", "event": event}


class TestSlackWebhook:
    @pytest.mark.asyncio
    async def test_url_verification(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/slack", json={"type": "url_verification", "challenge": "abc"})
        assert response.status_code == 200
        assert response.json() == {"challenge": "abc"}
        processor.process_discussion.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_queued(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/slack", json=slack_event())
        assert response.json() == {"ok": True, "thread_id": "C123:1700000000.000100"}
        parsed = processor.process_discussion.await_args.args[0]
        assert parsed.team_id == "T1"
        assert parsed.content == "<@UBOT> login is broken"

    @pytest.mark.asyncio
    async def test_bot_message_ignored(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/slack", json=slack_event(bot_id="B1"))
        assert response.json() == {"ok": True, "ignored": "bot message"}
        processor.process_discussion.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_text_rejected(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/slack", json=slack_event(text=""))
        assert response.status_code == 422
        assert response.json()["fields"] == ["event.text"]
        assert response.json()["ok"] is False

    @pytest.mark.asyncio
    async def test_bad_signature(self, monkeypatch, processor):
        monkeypatch.setattr(server, "slack_adapter", SlackAdapter(signing_secret="secret"))
        async with client() as c:
            response = await c.post("/webhooks/slack", json=slack_event())
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_json(self, adapters):
        async with client() as c:
            response = await c.post("/webhooks/slack", content=b"{nope")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_not_initialized(self, monkeypatch):
        monkeypatch.setattr(server, "slack_adapter", None)
        async with client() as c:
            response = await c.post("/webhooks/slack", json=slack_event())
        assert response.status_code == 503


class TestEmailWebhooks:
    @pytest.mark.asyncio
    async def test_mailgun_form(self, adapters, processor):
        form = {
            "recipient": "design-team@discubot.example.com",
            "from": '"Jane Doe" <comments-ABC123xyz@email.figma.com>',
            "subject": 'Jane Doe commented on "Homepage"',
            "stripped-text": "@discubot please review",
            "body-html": '<a href="https://www.figma.com/file/ABC123xyz/Home#200">View</a>',
        }
        async with client() as c:
            response = await c.post("/webhooks/mailgun", data=form)
        assert response.json() == {"ok": True, "thread_id": "ABC123xyz:200"}
        assert processor.process_discussion.await_args.args[0].source_type == "figma"

    @pytest.mark.asyncio
    async def test_mailgun_missing_body(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/mailgun", data={"from": "x@example.com"})
        assert response.status_code == 422
        assert response.json()["fields"] == ["body", "file_key"]

    @pytest.mark.asyncio
    async def test_resend_other_events_ignored(self, adapters, processor):
        async with client() as c:
            response = await c.post("/webhooks/resend", json={"type": "email.delivered", "data": {}})
        assert response.json() == {"ok": True, "ignored": "event type email.delivered"}
        processor.process_discussion.assert_not_called()


@pytest.fixture
def notion(monkeypatch):
    config = make_config(source_type="notion", api_token="secret_notion_token",
                         source_metadata={"workspace_id": "ws-1"})
    texts = {"comment-1": "@discubot export is broken", "comment-2": "looks fine to me"}

    def handler(request):
        comment_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={
            "id": comment_id,
            "discussion_id": "disc-1",
            "rich_text": [{"type": "text", "plain_text": texts[comment_id]}],
            "created_time": "2025-01-15T10:00:00.000Z",
            "created_by": {"id": "user-1"},
        })

    adapter = NotionCommentAdapter(
        config_resolver=lambda ws: config if ws == "ws-1" else None,
        http_client=mock_client(handler),
    )
    monkeypatch.setattr(server, "notion_adapter", adapter)
    return adapter


def notion_event(comment_id="comment-1", **overrides):
    event = {
        "type": "comment.created",
        "workspace_id": "ws-1",
        "data": {"id": comment_id, "discussion_id": "disc-1", "parent": {"type": "page_id", "page_id": "page-1"}},
    }
    event.update(overrides)
    return event


class TestNotionWebhook:
    @pytest.mark.asyncio
    async def test_verification_token_echoed(self, notion, processor):
        async with client() as c:
            response = await c.post("/webhooks/notion", json={"verification_token": "secret_tok"})
        assert response.json() == {"verification_token": "secret_tok"}
        processor.process_discussion.assert_not_called()

    @pytest.mark.asyncio
    async def test_triggered_comment_queued(self, notion, processor):
        async with client() as c:
            response = await c.post("/webhooks/notion", json=notion_event())
        assert response.json() == {"ok": True, "thread_id": "page-1:disc-1"}
        parsed = processor.process_discussion.await_args.args[0]
        assert parsed.source_type == "notion"
        assert parsed.team_id == "team-1"

    @pytest.mark.asyncio
    async def test_comment_without_trigger_ignored(self, notion, processor):
        async with client() as c:
            response = await c.post("/webhooks/notion", json=notion_event("comment-2"))
        assert response.json() == {"ok": True, "ignored": "comment does not contain trigger keyword '@discubot'"}
        processor.process_discussion.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_event_ignored(self, notion, processor):
        async with client() as c:
            response = await c.post("/webhooks/notion", json=notion_event(type="page.updated"))
        assert response.json()["ignored"].startswith("event type 'page.updated' ignored")

    @pytest.mark.asyncio
    async def test_bad_signature(self, monkeypatch, notion, processor):
        monkeypatch.setattr(notion, "_webhook_secret", "whsec")
        async with client() as c:
            response = await c.post("/webhooks/notion", json=notion_event(),
                                    headers={"X-Notion-Signature": "sha256=deadbeef"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_workspace_rate_limited(self, notion, processor):
        notion.rate_limiter.max_requests = 1
        async with client() as c:
            first = await c.post("/webhooks/notion", json=notion_event())
            second = await c.post("/webhooks/notion", json=notion_event())
        assert first.status_code == 200
        assert second.status_code == 429

    @pytest.mark.asyncio
    async def test_unknown_workspace_rejected(self, notion, processor):
        async with client() as c:
            response = await c.post("/webhooks/notion", json=notion_event(workspace_id="ws-9"))
        assert response.status_code == 422
        assert response.json()["fields"] == ["workspace_id"]


class TestOperations:
    @pytest.mark.asyncio
    async def test_health(self, adapters, processor):
        async with client() as c:
            response = await c.get("/health")
        data = response.json()
        assert data["status"] == "healthy"
        assert data["adapters"] == ["figma", "slack"]
        assert data["initialized"] is True

    @pytest.mark.asyncio
    async def test_get_job_hides_checkpoint(self, job_store):
        job = Job(team_id="team-1", source_type="slack", source_thread_id="C1:1", checkpoint={"parsed": {}})
        await job_store.create(job)
        async with client() as c:
            response = await c.get(f"/jobs/{job.id}")
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert "checkpoint" not in response.json()

    @pytest.mark.asyncio
    async def test_get_missing_job(self, job_store):
        async with client() as c:
            response = await c.get("/jobs/job_missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_resume_deferred_job(self, job_store, processor):
        job = Job(team_id="team-1", source_type="slack", source_thread_id="C1:1")
        job.record_stage(PipelineStage.VALIDATING, StageStatus.SUCCESS, 0.0)
        job.record_stage(PipelineStage.LOADING_CONFIG, StageStatus.SUCCESS, 0.0)
        await job_store.create(job)

        async with client() as c:
            response = await c.post(f"/jobs/{job.id}/resume")

        assert response.json() == {"ok": True, "job_id": job.id, "resume_from": "building_thread"}
        processor.resume_job.assert_awaited_once_with(job.id)

    @pytest.mark.asyncio
    async def test_resume_completed_job_conflicts(self, job_store, processor):
        job = Job(team_id="team-1", source_type="slack", source_thread_id="C1:1")
        job.transition(DiscussionStatus.PROCESSING)
        job.transition(DiscussionStatus.COMPLETED)
        await job_store.create(job)

        async with client() as c:
            response = await c.post(f"/jobs/{job.id}/resume")
        assert response.status_code == 409
        processor.resume_job.assert_not_called()
