"""
Discussion Processor

Runs one discussion through the pipeline:

1. validating - required fields present
2. loading_config - team's active config for the source
3. building_thread - full thread from the source, bot mentions removed
4. analyzing - summary and task detection
5. mapping_and_creating - destination pages
6. acknowledging - reply and status indicator on the source

Each stage outcome is written to the job, so a failed or deferred job can
be resumed from its first incomplete stage.
"""

import logging
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..common.errors import (
    ConfigurationError,
    DiscubotError,
    InputValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    ProcessingError,
    TaskSinkError,
)
from ..common.schemas import (
    AISummary,
    AnalysisResult,
    DetectedTask,
    DiscussionStatus,
    DiscussionThread,
    Job,
    ParsedDiscussion,
    PipelineStage,
    ProcessingResult,
    SourceConfig,
    StageStatus,
    TaskDetectionResult,
    TaskFailure,
    TaskRef,
    missing_fields,
)
from .adapters.base import SourceAdapter
from .analyzer import AnalysisOptions, Analyzer
from .stores import ConfigStore, JobStore
from .task_sink import NotionTaskSink, TaskContext

logger = logging.getLogger("discubot.pipeline.processor")


# ============================================================================
# Bot mention filtering
# ============================================================================

def filter_bot_mentions(
    text: str,
    handle: Optional[str] = None,
    bot_user_id: Optional[str] = None,
) -> str:
    """
    Remove the bot's own mentions from a message.

    ``@handle`` is matched case-insensitively and never inside a longer
    handle (``@testfigma`` leaves ``@testfigma2`` alone). Slack's
    ``<@BOTID>`` form is removed when ``bot_user_id`` is given. Other
    mentions and whitespace are left as they are, apart from trimming the
    ends.
    """
    if not text:
        return text
    result = text
    if handle:
        handle = handle.lstrip("@")
        pattern = re.compile(rf"(?<![\w])@{re.escape(handle)}(?![\w.-])[ \t]*", re.IGNORECASE)
        result = pattern.sub("", result)
    if bot_user_id:
        result = re.sub(rf"<@{re.escape(bot_user_id)}>[ \t]*", "", result)
    if result == text:
        return text
    return result.strip()


def build_confirmation_message(tasks: List[TaskRef]) -> str:
    if not tasks:
        return "✅ Discussion processed (no tasks created)"
    if len(tasks) == 1:
        return f"✅ Task created in Notion\n🔗 {tasks[0].url}"
    task_list = "\n".join(f"{i}. {t.url}" for i, t in enumerate(tasks, 1))
    return f"✅ Created {len(tasks)} tasks in Notion:\n{task_list}"


def passthrough_analysis(parsed: ParsedDiscussion) -> AnalysisResult:
    """Analysis stand-in when AI is off: one task straight from the event."""
    return AnalysisResult(
        summary=AISummary(summary=parsed.content),
        task_detection=TaskDetectionResult(
            tasks=[DetectedTask(title=parsed.title, description=parsed.content)],
            is_multi_task=False,
        ),
        processing_time=0.0,
        cached=False,
    )


# ============================================================================
# Run state
# ============================================================================

@dataclass
class ProcessOptions:
    skip_ai: bool = False
    skip_task_creation: bool = False
    skip_cache: bool = False
    # Use this thread instead of fetching from the source
    thread: Optional[DiscussionThread] = None
    # Started by an operator rather than a webhook; ignores auto_process
    manual: bool = False


@dataclass
class _RunState:
    parsed: ParsedDiscussion
    config: Optional[SourceConfig] = None
    thread: Optional[DiscussionThread] = None
    analysis: Optional[AnalysisResult] = None
    created: List[TaskRef] = field(default_factory=list)
    deferred: bool = False

    @classmethod
    def from_checkpoint(cls, checkpoint: Dict[str, Any]) -> "_RunState":
        state = cls(parsed=ParsedDiscussion.model_validate(checkpoint["parsed"]))
        if checkpoint.get("thread"):
            state.thread = DiscussionThread.model_validate(checkpoint["thread"])
        if checkpoint.get("analysis"):
            state.analysis = AnalysisResult.from_dict(checkpoint["analysis"])
        return state


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiscussionProcessor:
    """
    Pipeline orchestrator.

    Usage:
        processor = DiscussionProcessor(config_store, job_store, adapters, analyzer, sink)
        result = await processor.process_discussion(parsed)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        job_store: JobStore,
        adapters: Dict[str, SourceAdapter],
        analyzer: Optional[Analyzer],
        task_sink: NotionTaskSink,
        max_tasks: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._configs = config_store
        self._jobs = job_store
        self._adapters = adapters
        self._analyzer = analyzer
        self._sink = task_sink
        self._max_tasks = max_tasks
        self._clock = clock
        self._stages: Dict[PipelineStage, Callable[[Job, _RunState, ProcessOptions], Awaitable[StageStatus]]] = {
            PipelineStage.VALIDATING: self._validate,
            PipelineStage.LOADING_CONFIG: self._load_config,
            PipelineStage.BUILDING_THREAD: self._build_thread,
            PipelineStage.ANALYZING: self._analyze,
            PipelineStage.MAPPING_AND_CREATING: self._create_tasks,
            PipelineStage.ACKNOWLEDGING: self._acknowledge,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process_discussion(
        self, parsed: ParsedDiscussion, options: Optional[ProcessOptions] = None
    ) -> ProcessingResult:
        """
        Process a parsed discussion end to end.

        Raises:
            ProcessingError: a stage failed; ``stage`` and ``retryable``
                are set and the job is persisted as failed
        """
        options = options or ProcessOptions()
        job = Job(
            team_id=parsed.team_id,
            source_type=parsed.source_type,
            source_thread_id=parsed.source_thread_id,
        )
        job.checkpoint["parsed"] = parsed.model_dump(mode="json")
        await self._jobs.create(job)
        logger.info(
            "Job %s created for %s thread %s", job.id, parsed.source_type, parsed.source_thread_id
        )
        return await self._run(job, _RunState(parsed=parsed), options)

    async def resume_job(self, job_id: str, options: Optional[ProcessOptions] = None) -> ProcessingResult:
        """Continue a deferred or retryable-failed job from its first incomplete stage."""
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if not job.can_resume:
            raise InvalidTransitionError(f"Job {job_id} cannot be resumed from status {job.status}")

        if job.status == DiscussionStatus.FAILED.value:
            job.transition(DiscussionStatus.RETRYING)
        job.error = None
        job.failed_stage = None
        await self._jobs.save(job)

        state = _RunState.from_checkpoint(job.checkpoint)
        state.created = list(job.task_refs)
        if job.config_id:
            state.config = await self._configs.get(job.config_id)
            if state.config is None:
                raise ConfigurationError(f"Config {job.config_id} for job {job_id} no longer exists")

        options = replace(options or ProcessOptions(), manual=True)
        logger.info("Resuming job %s at stage %s", job.id, job.next_stage().value)
        return await self._run(job, state, options)

    # ------------------------------------------------------------------
    # Stage loop
    # ------------------------------------------------------------------

    async def _run(self, job: Job, state: _RunState, options: ProcessOptions) -> ProcessingResult:
        start = self._clock()
        job.attempts += 1
        job.started_at = job.started_at or _now()

        stage = job.next_stage()
        while stage != PipelineStage.COMPLETED:
            if stage == PipelineStage.BUILDING_THREAD or job.status == DiscussionStatus.RETRYING.value:
                await self._enter_processing(job, state)

            job.current_stage = stage.value
            stage_start = self._clock()
            try:
                outcome = await self._stages[stage](job, state, options)
            except Exception as e:
                error = self._wrap(e, stage)
                job.record_stage(stage, StageStatus.FAILED, self._clock() - stage_start, error.to_dict())
                await self._fail(job, state, error)
                raise error from e

            job.record_stage(stage, outcome, self._clock() - stage_start)
            await self._jobs.save(job)
            logger.info("Job %s: %s %s", job.id, stage.value, outcome.value)

            if state.deferred:
                logger.info("Job %s deferred: auto-processing is off for config %s", job.id, job.config_id)
                await self._indicate(state, DiscussionStatus.PENDING)
                return self._result(job, state, start, deferred=True)
            stage = job.next_stage()

        job.current_stage = PipelineStage.COMPLETED.value
        job.transition(DiscussionStatus.COMPLETED)
        job.processing_time = round(self._clock() - start, 4)
        await self._jobs.save(job)
        logger.info("Job %s completed in %.2fs (%d task(s))", job.id, job.processing_time, len(state.created))
        return self._result(job, state, start)

    async def _enter_processing(self, job: Job, state: _RunState) -> None:
        if job.status not in (DiscussionStatus.PENDING.value, DiscussionStatus.RETRYING.value):
            return
        job.transition(DiscussionStatus.PROCESSING)
        await self._jobs.save(job)
        await self._indicate(state, DiscussionStatus.PROCESSING)

    def _wrap(self, error: Exception, stage: PipelineStage) -> ProcessingError:
        if isinstance(error, DiscubotError):
            error.stage = error.stage or stage.value
            return ProcessingError(f"Stage {stage.value} failed: {error}", stage=stage.value, cause=error,
                                   context={"error": error.to_dict()})
        return ProcessingError(
            f"Stage {stage.value} failed: {type(error).__name__}: {error}",
            stage=stage.value,
            cause=error,
            retryable=False,
        )

    async def _fail(self, job: Job, state: _RunState, error: ProcessingError) -> None:
        job.transition(DiscussionStatus.FAILED)
        job.failed_stage = error.stage
        job.error = error.to_dict()
        job.retryable = error.retryable
        if error.retryable and job.attempts < job.max_attempts:
            job.transition(DiscussionStatus.RETRYING)
        await self._jobs.save(job)
        logger.error("Job %s failed at %s (retryable=%s): %s", job.id, error.stage, error.retryable, error)
        await self._indicate(state, DiscussionStatus.FAILED)

    def _result(self, job: Job, state: _RunState, start: float, deferred: bool = False) -> ProcessingResult:
        return ProcessingResult(
            job_id=job.id,
            discussion_id=job.discussion_id,
            status=job.status,
            analysis=state.analysis,
            tasks=list(state.created),
            task_errors=list(job.task_errors),
            processing_time=self._clock() - start,
            deferred=deferred,
        )

    async def _indicate(self, state: _RunState, status: DiscussionStatus) -> None:
        adapter = self._adapters.get(state.parsed.source_type)
        if adapter is None or state.config is None:
            return
        try:
            ok = await adapter.update_status(state.parsed.source_thread_id, status, state.config)
        except Exception as e:
            logger.warning("Status update to %s failed: %s", status.value, e)
            return
        if not ok:
            logger.warning("Status update to %s was not applied", status.value)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _validate(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        missing = missing_fields(state.parsed)
        if missing:
            raise InputValidationError(
                f"Discussion is missing required fields: {', '.join(missing)}", fields=missing
            )
        return StageStatus.SUCCESS

    async def _load_config(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        parsed = state.parsed
        config = await self._configs.find_active(parsed.team_id, parsed.source_type)
        if config is None:
            raise ConfigurationError(
                f"Source '{parsed.source_type}' is not configured for team '{parsed.team_id}'"
            )
        if options.thread is None and parsed.source_type not in self._adapters:
            raise ConfigurationError(f"No adapter registered for source '{parsed.source_type}'")

        state.config = config
        job.config_id = config.id
        job.discussion_id = f"{parsed.source_type}:{parsed.source_thread_id}"
        if not config.auto_process and not options.manual:
            state.deferred = True
        return StageStatus.SUCCESS

    async def _build_thread(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        config = state.config
        handle, bot_id = config.bot_handle, config.bot_user_id

        def strip(text: str) -> str:
            return filter_bot_mentions(text, handle=handle, bot_user_id=bot_id)

        state.parsed = state.parsed.model_copy(update={"content": strip(state.parsed.content)})
        if options.thread is not None:
            thread = options.thread
        else:
            adapter = self._adapters[state.parsed.source_type]
            thread = await adapter.fetch_thread(state.parsed.source_thread_id, config)
        state.thread = thread.map_contents(strip)

        job.checkpoint["parsed"] = state.parsed.model_dump(mode="json")
        job.checkpoint["thread"] = state.thread.model_dump(mode="json")
        logger.info("Job %s: thread %s has %d message(s)", job.id, state.thread.id, state.thread.message_count)
        return StageStatus.SUCCESS

    async def _analyze(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        config = state.config
        if options.skip_ai or not config.ai_enabled or self._analyzer is None:
            state.analysis = passthrough_analysis(state.parsed)
            job.checkpoint["analysis"] = state.analysis.to_dict()
            return StageStatus.SKIPPED

        analysis_options = AnalysisOptions(
            source_type=state.parsed.source_type,
            custom_summary_prompt=config.ai_summary_prompt,
            custom_task_prompt=config.ai_task_prompt,
            available_domains=list(config.available_domains),
            max_tasks=self._max_tasks,
            skip_cache=options.skip_cache,
            api_key=config.anthropic_api_key,
        )
        state.analysis = await self._analyzer.analyze(state.thread, analysis_options)
        job.checkpoint["analysis"] = state.analysis.to_dict()
        job.transition(DiscussionStatus.ANALYZED)
        await self._indicate(state, DiscussionStatus.ANALYZED)
        return StageStatus.SUCCESS

    async def _create_tasks(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        if options.skip_task_creation:
            return StageStatus.SKIPPED
        # Tasks already created by an earlier attempt are not created twice
        done = {ref.index for ref in state.created}
        pending = [i for i in range(len(state.analysis.tasks)) if i not in done]
        tasks = [state.analysis.tasks[i] for i in pending]
        if not tasks:
            logger.info("Job %s: no tasks to create", job.id)
            return StageStatus.SKIPPED

        context = TaskContext(
            thread=state.thread,
            summary=state.analysis.summary,
            source_type=state.parsed.source_type,
            source_url=state.parsed.source_url,
            team_id=state.parsed.team_id,
        )
        batch = await self._sink.create_tasks(state.config, tasks, context)
        # The sink indexes refs within the batch; store the position in the full list
        for ref in batch.created:
            if ref.index is not None:
                ref.index = pending[ref.index]
        state.created.extend(batch.created)
        job.task_refs = list(state.created)
        job.task_errors = list(batch.errors)

        if batch.errors and not batch.created:
            raise self._batch_error(batch.errors)
        if batch.errors:
            logger.warning(
                "Job %s: %d of %d task(s) failed", job.id, len(batch.errors), len(tasks)
            )
        return StageStatus.SUCCESS

    @staticmethod
    def _batch_error(errors: List[TaskFailure]) -> TaskSinkError:
        retryable = any(e.retryable for e in errors)
        first = errors[0]
        return TaskSinkError(
            f"All {len(errors)} task(s) failed: {first.error}",
            status_code=first.status_code,
            retryable=retryable,
        )

    async def _acknowledge(self, job: Job, state: _RunState, options: ProcessOptions) -> StageStatus:
        adapter = self._adapters.get(state.parsed.source_type)
        if adapter is None:
            return StageStatus.SKIPPED

        thread_id = state.parsed.source_thread_id
        if state.config.post_confirmation:
            try:
                posted = await adapter.post_reply(thread_id, build_confirmation_message(state.created), state.config)
            except Exception as e:
                logger.warning("Job %s: confirmation reply failed: %s", job.id, e)
                posted = False
            if not posted:
                logger.warning("Job %s: confirmation reply was not posted", job.id)
        await self._indicate(state, DiscussionStatus.COMPLETED)
        return StageStatus.SUCCESS
