"""
Discubot Server

FastAPI server receiving discussion webhooks and running them through the
pipeline.

Endpoints:
- POST /webhooks/slack: Slack Events API
- POST /webhooks/mailgun: Figma comment emails via Mailgun
- POST /webhooks/resend: Figma comment emails via Resend
- POST /webhooks/notion: Notion comment events
- GET /health: Health check
- GET /jobs/{job_id}: Job status and stage outcomes
- POST /jobs/{job_id}/resume: Resume a deferred or failed job
- POST /configs/{config_id}/test: Check a source config and its destination
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..common.config import DiscubotConfig, ensure_directories, load_config
from ..common.errors import DiscubotError, InputValidationError
from ..common.llm_client import LLMClient
from ..common.schemas import ParsedDiscussion, SourceConfig
from .adapters import (
    FigmaAdapter,
    NotionCommentAdapter,
    ResendAdapter,
    SlackAdapter,
    SourceAdapter,
    build_registry,
)
from .analysis_cache import AnalysisCache
from .analyzer import Analyzer
from .identity import JsonFileIdentityStore
from .processor import DiscussionProcessor
from .stores import ConfigStore, JobStore, JsonFileConfigStore, JsonFileJobStore
from .task_sink import NotionTaskSink
from .throttle import RateLimiter

logger = logging.getLogger("discubot.pipeline.server")


# Global state
config: Optional[DiscubotConfig] = None
config_store: Optional[ConfigStore] = None
job_store: Optional[JobStore] = None
slack_adapter: Optional[SlackAdapter] = None
figma_adapter: Optional[FigmaAdapter] = None
resend_adapter: Optional[ResendAdapter] = None
notion_adapter: Optional[NotionCommentAdapter] = None
adapters: Dict[str, SourceAdapter] = {}
analysis_cache: Optional[AnalysisCache] = None
task_sink: Optional[NotionTaskSink] = None
processor: Optional[DiscussionProcessor] = None


def _slack_team(workspace_id: str) -> Optional[str]:
    found = config_store.find_by_workspace("slack", workspace_id) if config_store else None
    return found.team_id if found else workspace_id


def _email_team(slug: str) -> Optional[str]:
    found = config_store.find_by_email_slug(slug) if config_store else None
    return found.team_id if found else None


def _notion_config(workspace_id: str) -> Optional[SourceConfig]:
    return config_store.find_by_workspace("notion", workspace_id) if config_store else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, config_store, job_store, slack_adapter, figma_adapter, resend_adapter, notion_adapter
    global adapters, analysis_cache, task_sink, processor

    print("[Discubot] Starting up...")
    load_dotenv()
    ensure_directories()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"[Discubot] Loaded config (LLM provider: {config.llm.provider})")

    config_store = JsonFileConfigStore(config.storage.sources_path)
    job_store = JsonFileJobStore(config.storage.jobs_path)
    identity_store = JsonFileIdentityStore(config.storage.identities_path)
    print(f"[Discubot] Source configs: {len(config_store.list())}")

    slack_adapter = SlackAdapter(
        signing_secret=config.server.slack_signing_secret,
        team_resolver=_slack_team,
    )
    figma_adapter = FigmaAdapter(
        signing_key=config.server.mailgun_signing_key,
        team_resolver=_email_team,
    )
    resend_adapter = ResendAdapter(
        figma_adapter,
        api_token=config.server.resend_api_token,
        webhook_secret=config.server.resend_webhook_secret,
        fetch_delay=config.server.resend_fetch_delay,
    )
    notion_adapter = NotionCommentAdapter(
        webhook_secret=config.server.notion_webhook_secret,
        config_resolver=_notion_config,
        api_base=config.notion.api_base,
        notion_version=config.notion.notion_version,
    )
    adapters = build_registry([slack_adapter, figma_adapter, notion_adapter])
    print(f"[Discubot] Adapters: {', '.join(sorted(adapters))}")

    llm = LLMClient(
        provider=config.llm.provider,
        model=config.llm.anthropic_model if config.llm.provider == "anthropic" else config.llm.openai_model,
        anthropic_api_key=config.llm.anthropic_api_key or None,
        openai_api_key=config.llm.openai_api_key or None,
    )
    analysis_cache = AnalysisCache(
        ttl_seconds=config.analysis.cache_ttl_seconds,
        max_entries=config.analysis.cache_max_entries,
    )
    analyzer = Analyzer(
        llm,
        analysis_cache,
        timeout=config.llm.timeout,
        max_tokens=config.llm.max_tokens,
        max_attempts=config.analysis.max_attempts,
        base_delay=config.analysis.base_delay,
        max_delay=config.analysis.max_delay,
    )
    if llm.is_available:
        print(f"[Discubot] Analyzer ready ({llm.model})")
    else:
        print("[Discubot] Analyzer has no default key (per-config keys only)")

    task_sink = NotionTaskSink(
        throttle=RateLimiter(config.notion.min_interval),
        identity_store=identity_store,
        api_base=config.notion.api_base,
        notion_version=config.notion.notion_version,
        timeout=config.notion.timeout,
        max_attempts=config.analysis.max_attempts,
        base_delay=config.analysis.base_delay,
        max_delay=config.analysis.max_delay,
    )
    processor = DiscussionProcessor(
        config_store,
        job_store,
        adapters,
        analyzer,
        task_sink,
        max_tasks=config.analysis.max_tasks,
    )
    print("[Discubot] Ready to receive events")

    yield

    print("[Discubot] Shutting down...")
    for adapter in (slack_adapter, figma_adapter, resend_adapter, notion_adapter):
        await adapter.aclose()
    await task_sink.aclose()


app = FastAPI(
    title="Discubot",
    description="Turns discussions into Notion tasks",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Background Tasks
# =============================================================================

async def process_discussion(parsed: ParsedDiscussion):
    """Run one discussion through the pipeline; failures are already on the job."""
    if not processor:
        logger.warning("Processor not initialized, dropping %s", parsed.source_thread_id)
        return
    try:
        result = await processor.process_discussion(parsed)
    except DiscubotError as e:
        logger.error("Processing %s failed at %s: %s", parsed.source_thread_id, e.stage, e)
        return
    if result.deferred:
        logger.info("Job %s deferred until manually resumed", result.job_id)


async def resume_job(job_id: str):
    try:
        await processor.resume_job(job_id)
    except DiscubotError as e:
        logger.error("Resuming job %s failed: %s", job_id, e)


def _reject_invalid(e: InputValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"ok": False, "error": e.message, "fields": e.fields},
    )


async def _accept(adapter: SourceAdapter, payload: Dict[str, Any], background_tasks: BackgroundTasks):
    reason = adapter.ignore_reason(payload)
    if reason:
        return JSONResponse({"ok": True, "ignored": reason})
    try:
        parsed = await adapter.parse_incoming(payload)
    except InputValidationError as e:
        return _reject_invalid(e)
    background_tasks.add_task(process_discussion, parsed)
    return JSONResponse({"ok": True, "thread_id": parsed.source_thread_id})


# =============================================================================
# Webhooks
# =============================================================================

@app.post("/webhooks/slack")
async def slack_webhook(request: Request, background_tasks: BackgroundTasks):
    """Slack Events API endpoint, including the url_verification handshake."""
    if not slack_adapter:
        raise HTTPException(status_code=503, detail="Adapter not initialized")

    body = await request.body()
    if not slack_adapter.verify_signature(body, request.headers):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if slack_adapter.is_url_verification(data):
        return JSONResponse({"challenge": slack_adapter.get_challenge(data)})

    return await _accept(slack_adapter, data, background_tasks)


@app.post("/webhooks/mailgun")
async def mailgun_webhook(request: Request, background_tasks: BackgroundTasks):
    """Inbound Figma notification email forwarded by Mailgun (form encoded)."""
    if not figma_adapter:
        raise HTTPException(status_code=503, detail="Adapter not initialized")

    body = await request.body()
    form = dict(await request.form())
    if not figma_adapter.verify_signature(body, request.headers, form=form):
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = {k: v for k, v in form.items() if isinstance(v, str)}
    return await _accept(figma_adapter, payload, background_tasks)


@app.post("/webhooks/resend")
async def resend_webhook(request: Request, background_tasks: BackgroundTasks):
    """Resend inbound email event; the email body is fetched from Resend."""
    if not resend_adapter:
        raise HTTPException(status_code=503, detail="Adapter not initialized")

    body = await request.body()
    if not resend_adapter.verify_signature(body, request.headers):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if data.get("type") != "email.received":
        return JSONResponse({"ok": True, "ignored": f"event type {data.get('type')}"})

    try:
        return await _accept(resend_adapter, data, background_tasks)
    except DiscubotError as e:
        # Fetching the email failed; Resend retries on non-2xx
        logger.error("Resend email fetch failed: %s", e)
        raise HTTPException(status_code=502 if e.retryable else 400, detail=e.message)


@app.post("/webhooks/notion")
async def notion_webhook(request: Request, background_tasks: BackgroundTasks):
    """Notion comment.created events, including the verification-token handshake."""
    if not notion_adapter:
        raise HTTPException(status_code=503, detail="Adapter not initialized")

    body = await request.body()
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    # The handshake is not signed
    if notion_adapter.is_url_verification(data):
        token = notion_adapter.get_challenge(data)
        if not token:
            return JSONResponse({"ok": False, "error": "Missing verification_token"}, status_code=400)
        logger.info("Notion webhook verification token received")
        return JSONResponse({"verification_token": token})

    if not notion_adapter.verify_signature(body, request.headers):
        raise HTTPException(status_code=401, detail="Invalid signature")

    reason = notion_adapter.ignore_reason(data)
    if reason:
        return JSONResponse({"ok": True, "ignored": reason})

    if not notion_adapter.rate_limiter.allow(data.get("workspace_id") or "unknown"):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")

    try:
        parsed = await notion_adapter.parse_incoming(data)
    except InputValidationError as e:
        return _reject_invalid(e)
    except DiscubotError as e:
        logger.error("Notion comment fetch failed: %s", e)
        raise HTTPException(status_code=502 if e.retryable else 400, detail=e.message)

    if not parsed.metadata.get("triggered"):
        keyword = parsed.metadata.get("trigger_keyword")
        return JSONResponse({"ok": True, "ignored": f"comment does not contain trigger keyword '{keyword}'"})

    background_tasks.add_task(process_discussion, parsed)
    return JSONResponse({"ok": True, "thread_id": parsed.source_thread_id})


# =============================================================================
# Operations
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "discubot",
        "initialized": processor is not None,
        "adapters": sorted(adapters),
        "cache": analysis_cache.stats() if analysis_cache else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    if not job_store:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    job = await job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    data = job.to_dict()
    data.pop("checkpoint", None)
    return data


@app.post("/jobs/{job_id}/resume")
async def resume(job_id: str, background_tasks: BackgroundTasks):
    """Queue a deferred or retryable-failed job to continue where it stopped."""
    if not processor or not job_store:
        raise HTTPException(status_code=503, detail="Processor not initialized")
    job = await job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if not job.can_resume:
        raise HTTPException(status_code=409, detail=f"Job cannot be resumed from status {job.status}")
    background_tasks.add_task(resume_job, job_id)
    return {"ok": True, "job_id": job_id, "resume_from": job.next_stage().value}


@app.post("/configs/{config_id}/test")
async def test_config(config_id: str):
    """Structural checks plus live round trips to the source and to Notion."""
    if not config_store or not task_sink:
        raise HTTPException(status_code=503, detail="Not initialized")
    source_config = await config_store.get(config_id)
    if not source_config:
        raise HTTPException(status_code=404, detail="Config not found")

    adapter = adapters.get(source_config.source_type)
    if adapter is None:
        raise HTTPException(status_code=400, detail=f"Unsupported source type {source_config.source_type}")

    validation = adapter.validate_config(source_config)
    source_ok = await adapter.test_connection(source_config) if validation.valid else False
    notion = await task_sink.test_connection(source_config)
    return {
        "config_id": config_id,
        "valid": validation.valid,
        "errors": validation.errors,
        "warnings": validation.warnings,
        "source_connected": source_ok,
        "notion": {
            "connected": notion.connected,
            "database_title": notion.schema_title,
            "error": notion.error,
            "error_code": notion.error_code,
        },
    }


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Discubot server"""
    import uvicorn

    config = load_config()

    print(f"[Discubot] Starting server on {config.server.host}:{config.server.port}")
    uvicorn.run(
        "discubot.pipeline.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
