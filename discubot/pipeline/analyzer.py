"""
Analysis Engine

Summarizes a thread and detects candidate tasks with two concurrent model
calls, behind a shared content-addressed cache and retry with backoff.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..common.errors import ConfigurationError
from ..common.llm_client import LLMClient
from ..common.llm_utils import require_llm_json
from ..common.retry import retry_with_backoff
from ..common.schemas import (
    AISummary,
    AnalysisResult,
    DetectedTask,
    DiscussionThread,
    TaskDetectionResult,
)
from ..common.schemas.analysis import parse_confidence
from .analysis_cache import AnalysisCache, fingerprint
from .prompts import build_summary_prompt, build_task_prompt

logger = logging.getLogger("discubot.pipeline.analyzer")

SUMMARY_MAX_TOKENS = 1024
TASKS_MAX_TOKENS = 2048


@dataclass
class AnalysisOptions:
    source_type: Optional[str] = None
    custom_summary_prompt: Optional[str] = None
    custom_task_prompt: Optional[str] = None
    available_domains: List[str] = field(default_factory=list)
    max_tasks: int = 5
    skip_cache: bool = False
    api_key: Optional[str] = None  # per-config override, not part of the fingerprint

    def fingerprint_options(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "custom_summary_prompt": self.custom_summary_prompt,
            "custom_task_prompt": self.custom_task_prompt,
            "available_domains": list(self.available_domains),
            "max_tasks": self.max_tasks,
        }


class Analyzer:
    """
    Discussion analyzer.

    Usage:
        analyzer = Analyzer(llm, AnalysisCache())
        result = await analyzer.analyze(thread, AnalysisOptions(source_type="slack"))
    """

    def __init__(
        self,
        llm: LLMClient,
        cache: Optional[AnalysisCache] = None,
        *,
        timeout: float = 60.0,
        max_tokens: int = TASKS_MAX_TOKENS,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._llm = llm
        self._cache = cache or AnalysisCache()
        self._timeout = timeout
        # Task detection gets the full budget; summaries are capped lower
        self._tasks_max_tokens = max_tokens
        self._summary_max_tokens = min(SUMMARY_MAX_TOKENS, max_tokens)
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._keyed_clients: Dict[str, LLMClient] = {}

    @property
    def cache(self) -> AnalysisCache:
        return self._cache

    def _client_for(self, api_key: Optional[str]) -> LLMClient:
        if not api_key or self._llm.provider != "anthropic":
            return self._llm
        client = self._keyed_clients.get(api_key)
        if client is None:
            client = LLMClient(provider="anthropic", model=self._llm.model, anthropic_api_key=api_key)
            self._keyed_clients[api_key] = client
        return client

    async def _generate(self, client: LLMClient, prompt: str, max_tokens: int) -> str:
        return await retry_with_backoff(
            lambda: client.generate(prompt, max_tokens=max_tokens, timeout=self._timeout),
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            sleep=self._sleep,
        )

    async def summarize(self, thread: DiscussionThread, options: AnalysisOptions) -> AISummary:
        client = self._client_for(options.api_key)
        prompt = build_summary_prompt(
            thread.render(),
            source_type=options.source_type,
            available_domains=options.available_domains,
            custom_prompt=options.custom_summary_prompt,
        )
        raw = await self._generate(client, prompt, self._summary_max_tokens)
        data = require_llm_json(raw, "summary")
        return AISummary.from_llm(data, options.available_domains)

    async def detect_tasks(self, thread: DiscussionThread, options: AnalysisOptions) -> TaskDetectionResult:
        client = self._client_for(options.api_key)
        prompt = build_task_prompt(
            thread.render(),
            max_tasks=options.max_tasks,
            available_domains=options.available_domains,
            custom_prompt=options.custom_task_prompt,
        )
        raw = await self._generate(client, prompt, self._tasks_max_tokens)
        data = require_llm_json(raw, "task detection")

        raw_tasks = data.get("tasks")
        if not isinstance(raw_tasks, list):
            raw_tasks = []
        tasks = []
        for item in raw_tasks:
            if not isinstance(item, dict):
                continue
            task = DetectedTask.from_llm(item, options.available_domains)
            if not task.title:
                logger.info("Dropping detected task without a title")
                continue
            tasks.append(task)
        tasks = tasks[:options.max_tasks]

        return TaskDetectionResult(
            tasks=tasks,
            is_multi_task=len(tasks) > 1,
            confidence=parse_confidence(data.get("confidence")),
        )

    async def _run(self, thread: DiscussionThread, options: AnalysisOptions) -> AnalysisResult:
        start = time.monotonic()
        if not self._client_for(options.api_key).is_available:
            raise ConfigurationError("No language model configured for analysis")

        logger.info("Analyzing thread %s (%d messages)", thread.id, thread.message_count)
        summary, detection = await asyncio.gather(
            self.summarize(thread, options),
            self.detect_tasks(thread, options),
        )
        elapsed = time.monotonic() - start
        logger.info(
            "Analysis of %s done in %.2fs: %d task(s)", thread.id, elapsed, len(detection.tasks)
        )
        return AnalysisResult(
            summary=summary,
            task_detection=detection,
            processing_time=elapsed,
            cached=False,
        )

    async def analyze(
        self, thread: DiscussionThread, options: Optional[AnalysisOptions] = None
    ) -> AnalysisResult:
        options = options or AnalysisOptions()
        if options.skip_cache:
            return await self._run(thread, options)

        key = fingerprint(thread, options.fingerprint_options())
        result, cached = await self._cache.get_or_compute(key, lambda: self._run(thread, options))
        if cached:
            logger.info("Cache hit for thread %s", thread.id)
        return result
