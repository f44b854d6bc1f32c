"""ResearchOrchestrator — plan, refine, research and synthesize.

Every operation follows the same template::

    select model → cache lookup (cacheable tasks only)
                 → execute_with_retry(timed generation call)
                 → performance recorded per attempt
                 → cache store (cacheable tasks only) → return

The orchestrator is an explicit service object: it owns (or is handed) its
:class:`ResponseCache`, :class:`PerformanceMonitor` and :class:`ModelSelector`
instead of reaching for module-level singletons.  Construct one per process
and pass it by reference.

Degradation policy:
    create_plan        — failures propagate (the workflow moves to ERROR)
    refine_plan        — failures return the current plan + a placeholder entry
    research_subtopic  — failures propagate; research_plan turns them into
                         a settled placeholder for that subtopic
    synthesize_report  — never raises for missing content or transient errors;
                         only ConfigurationError / unexpected errors escape

Usage::

    osa = ResearchOrchestrator(GenerationClient())
    plan = await osa.create_plan("Group Theory")
    run = await osa.research_plan("Group Theory", plan)
    report = await osa.synthesize_report("Group Theory", run.subtopics)
"""

from __future__ import annotations

import inspect
import json
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Mapping, TypeVar

import structlog
from pydantic import BaseModel, Field

from delve.config import settings
from delve.engine.cache import ResponseCache, is_cacheable
from delve.engine.errors import ConfigurationError, MalformedResponseError, TransientCallError
from delve.engine.monitor import PerformanceMonitor
from delve.engine.reports import (
    MIN_CONTENT_CHARS,
    RELAXED_MIN_CONTENT_CHARS,
    diagnostic_report,
    normalize_summary,
    plain_report,
    select_for_synthesis,
)
from delve.engine.retry import Sleeper, execute_with_retry
from delve.engine.selector import ModelSelector
from delve.models.research import (
    FinalReport,
    Source,
    SubtopicRecord,
    SubtopicStatus,
    merge_sources,
)
from delve.tools.generation import GenerationClient, GenerationRequest, GenerationResult
from delve.tools.strategy import StrategyEntry, TaskCategory

logger = structlog.get_logger().bind(component="engine.orchestrator")

T = TypeVar("T")

MIN_PLAN_SIZE = 5
MAX_PLAN_SIZE = 7

_PLAN_SYSTEM = """\
You are a research planner. Break the user's topic into 5 to 7 subtopics that
together give a comprehensive understanding: historical context, fundamental
concepts, key results, important figures and modern applications. Each
subtopic must be researchable on its own.
Respond with a JSON object: {"subtopics": ["...", "..."]}
"""

_REFINE_SYSTEM = """\
You are a research planner revising an existing plan based on user feedback.
Return an updated list of 5 to 7 subtopics that applies the feedback.
Respond with a JSON object: {"subtopics": ["...", "..."]}
"""

_RESEARCH_SYSTEM = """\
You are a subject-matter expert writing one section of a research report.
Write a detailed, clear explanation at university level. Do not write a title.
Respond with a JSON object:
{"content": "<markdown>", "sources": [{"uri": "...", "title": "..."}]}
"""

_SYNTHESIS_SYSTEM = """\
You are an academic writer. Synthesize the research notes into one coherent
report. First list 4 to 6 concise key points. Then write the full report in
markdown: a title (#), a short introduction, one section (##) per subtopic,
and a conclusion.
Respond with a JSON object: {"summary": ["...", "..."], "report": "<markdown>"}
"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


class SubtopicResult(BaseModel):
    """Output of one research call."""

    content: str
    sources: list[Source] = Field(default_factory=list)


@dataclass
class ResearchRun:
    """Working set of :meth:`ResearchOrchestrator.research_plan`."""

    subtopics: list[SubtopicRecord]
    sources: list[Source] = field(default_factory=list)

    @property
    def failed(self) -> list[SubtopicRecord]:
        return [s for s in self.subtopics if s.failed]


UpdateCallback = Callable[[int, SubtopicRecord, list[Source]], Awaitable[None] | None]


class ResearchOrchestrator:
    """Drives generation calls for the four research operations.

    Args:
        client:        Generation client (anything with ``async generate()``).
        monitor:       Shared performance monitor (created if omitted).
        cache:         Shared response cache (created from settings if omitted).
        selector:      Model selector (built from *monitor* + *strategy* if omitted).
        strategy:      Task → StrategyEntry table override.
        max_retries:   Attempts per call (default ``settings.retry_max_attempts``).
        base_delay_ms: First backoff delay (default ``settings.retry_base_delay_ms``).
        sleep:         Async sleeper for the retry executor (inject in tests).
    """

    def __init__(
        self,
        client: GenerationClient,
        *,
        monitor: PerformanceMonitor | None = None,
        cache: ResponseCache | None = None,
        selector: ModelSelector | None = None,
        strategy: Mapping[TaskCategory, StrategyEntry] | None = None,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self._client = client
        self.monitor = monitor if monitor is not None else PerformanceMonitor()
        self.cache = cache if cache is not None else ResponseCache(
            ttl_ms=settings.cache_ttl_seconds * 1000,
            sweep_interval_ms=settings.cache_sweep_seconds * 1000,
        )
        self.selector = (
            selector if selector is not None else ModelSelector(self.monitor, strategy)
        )
        self._max_retries = max_retries or settings.retry_max_attempts
        self._base_delay_ms = (
            settings.retry_base_delay_ms if base_delay_ms is None else base_delay_ms
        )
        self._sleep = sleep
        self.current_model: str = ""
        self.total_tokens = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start background housekeeping (cache sweep).  Needs a running loop."""
        self.cache.start_sweeper()

    async def close(self) -> None:
        await self.cache.stop_sweeper()
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()

    # ── Diagnostics ───────────────────────────────────────────────────────

    def get_performance_stats(self) -> dict[str, dict[str, Any]]:
        return self.monitor.all_stats()

    def get_cache_stats(self) -> dict[str, int]:
        return self.cache.stats()

    def model_for_task(self, task: TaskCategory) -> str:
        """Model the selector would pick for *task* right now."""
        return self.selector.select_model(task)

    # ── Core call path ────────────────────────────────────────────────────

    async def _timed_call(self, model: str, request: GenerationRequest) -> GenerationResult:
        """One generation attempt; outcome and latency go to the monitor."""
        start = time.perf_counter()
        try:
            result = await self._client.generate(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.monitor.record_request(model, False, elapsed_ms)
            raise
        elapsed_ms = (time.perf_counter() - start) * 1000
        self.monitor.record_request(model, True, elapsed_ms)
        self.total_tokens += int(result.usage.get("total_tokens") or 0)
        return result

    async def _run(
        self,
        task: TaskCategory,
        prompt: str,
        parse: Callable[[GenerationResult], T],
        *,
        system: str = "",
        cache_key: str | None = None,
    ) -> T:
        model = self.selector.select_model(task)
        self.current_model = model
        entry = self.selector.strategy_for(task)

        key = f"{cache_key}:{model}" if cache_key and is_cacheable(task) else None
        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("cache_hit", task=task.value, model=model)
                return cached

        request = GenerationRequest(
            model=model,
            prompt=prompt,
            system=system,
            max_tokens=entry.max_tokens,
            temperature=entry.temperature,
            response_format="json",
        )

        async def attempt() -> T:
            result = await self._timed_call(model, request)
            return parse(result)

        logger.debug("generation_start", task=task.value, model=model)
        value = await execute_with_retry(
            attempt,
            self._max_retries,
            self._base_delay_ms,
            sleep=self._sleep,
            label=task.value,
        )
        if key is not None:
            self.cache.set(key, value, model)
        return value

    # ── Operations ────────────────────────────────────────────────────────

    async def create_plan(self, topic: str) -> list[str]:
        """Ask the model for 5–7 subtopic titles for *topic*.

        Raises:
            ConfigurationError:     Generation API not configured.
            MalformedResponseError: No usable titles after all retries.
            TransientCallError:     Transport failures after all retries.
        """
        plan = await self._run(
            TaskCategory.PLANNING,
            f"Topic: {topic}",
            _parse_plan,
            system=_PLAN_SYSTEM,
            cache_key=f"plan:{topic}",
        )
        logger.info("plan_created", topic=topic, subtopics=len(plan), model=self.current_model)
        return list(plan)

    async def refine_plan(self, topic: str, current_plan: Sequence[str], feedback: str) -> list[str]:
        """Revise *current_plan* according to *feedback*.

        Never blocks the user: on any failure except a configuration error
        the current plan comes back unchanged plus one placeholder entry
        describing the feedback.
        """
        bullet_plan = "\n".join(f"- {title}" for title in current_plan)
        prompt = (
            f"Topic: {topic}\n"
            f"Current plan:\n{bullet_plan}\n\n"
            f"User feedback: {feedback}"
        )
        try:
            plan = await self._run(
                TaskCategory.REFINEMENT, prompt, _parse_plan, system=_REFINE_SYSTEM
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.warning("plan_refine_failed", topic=topic, error=str(exc))
            return [*current_plan, f"New subtopic: {feedback}"]
        logger.info("plan_refined", topic=topic, subtopics=len(plan), model=self.current_model)
        return list(plan)

    async def research_subtopic(self, subtopic: str, main_topic: str) -> SubtopicResult:
        """Research one subtopic in the context of *main_topic*."""
        result = await self._run(
            TaskCategory.RESEARCH,
            f"Subtopic: {subtopic}\nWithin the broader topic: {main_topic}",
            _parse_research,
            system=_RESEARCH_SYSTEM,
            cache_key=f"research:{subtopic}:{main_topic}",
        )
        return result.model_copy(deep=True)

    async def research_plan(
        self,
        main_topic: str,
        subtopics: Sequence[SubtopicRecord | str],
        on_update: UpdateCallback | None = None,
        sources: Sequence[Source] | None = None,
    ) -> ResearchRun:
        """Research every subtopic sequentially, in plan order.

        Only one generation call is outstanding at a time; subtopic n+1 is
        not started until subtopic n has settled.  A failed subtopic settles
        as complete with placeholder content and ``error`` set.  Records that
        are already complete are skipped, so a resumed run picks up where
        the previous one stopped.

        The working set lives in a local :class:`ResearchRun`; *on_update*
        receives ``(index, record, sources)`` after every status change and
        is never read back from.
        """
        run = ResearchRun(
            subtopics=[
                s if isinstance(s, SubtopicRecord) else SubtopicRecord(title=s)
                for s in subtopics
            ],
            sources=list(sources or []),
        )

        for index, record in enumerate(run.subtopics):
            if record.is_complete:
                run.sources = merge_sources(run.sources, record.sources or [])
                continue

            record = record.advance(SubtopicStatus.LOADING)
            run.subtopics[index] = record
            await _publish(on_update, index, record, run.sources)

            try:
                result = await self.research_subtopic(record.title, main_topic)
                record = record.advance(
                    SubtopicStatus.COMPLETE,
                    content=result.content,
                    sources=result.sources,
                )
            except Exception as exc:
                logger.warning(
                    "subtopic_research_failed",
                    subtopic=record.title,
                    error=str(exc),
                )
                record = record.advance(
                    SubtopicStatus.COMPLETE,
                    content=f"Research for '{record.title}' could not be completed.",
                    sources=[],
                    error=str(exc) or type(exc).__name__,
                )

            run.subtopics[index] = record
            run.sources = merge_sources(run.sources, record.sources or [])
            await _publish(on_update, index, record, run.sources)

        logger.info(
            "research_plan_settled",
            topic=main_topic,
            subtopics=len(run.subtopics),
            failed=len(run.failed),
            sources=len(run.sources),
        )
        return run

    async def synthesize_report(
        self, topic: str, subtopics: Sequence[SubtopicRecord]
    ) -> FinalReport:
        """Synthesize the final report.  Never cached.

        Input is filtered twice (strict, then relaxed content threshold).
        With nothing usable a local diagnostic report is returned and the
        model is not called.  Transient or malformed-output failures fall
        back to a locally assembled report.

        Raises:
            ConfigurationError: Generation API not configured.
        """
        usable = select_for_synthesis(subtopics, MIN_CONTENT_CHARS)
        if not usable:
            usable = select_for_synthesis(subtopics, RELAXED_MIN_CONTENT_CHARS)
            if usable:
                logger.info("synthesis_relaxed_filter", topic=topic, usable=len(usable))
        if not usable:
            logger.warning("synthesis_no_usable_content", topic=topic, subtopics=len(subtopics))
            return diagnostic_report(topic, subtopics)

        notes = "\n\n---\n\n".join(
            f"### {s.title}\n\n{(s.content or '').strip()}" for s in usable
        )
        titles = [s.title for s in usable]

        def parse(result: GenerationResult) -> FinalReport:
            return _parse_report(result.text, titles)

        try:
            report = await self._run(
                TaskCategory.SYNTHESIS,
                f"Topic: {topic}\n\nResearch notes:\n\n{notes}",
                parse,
                system=_SYNTHESIS_SYSTEM,
            )
        except (TransientCallError, MalformedResponseError) as exc:
            logger.warning("synthesis_call_failed", topic=topic, error=str(exc))
            return plain_report(topic, usable, subtopics, reason=str(exc))

        logger.info(
            "report_synthesized",
            topic=topic,
            sections=len(usable),
            summary_points=len(report.summary),
            model=self.current_model,
        )
        return report


# ── Helpers ───────────────────────────────────────────────────────────────────


async def _publish(
    callback: UpdateCallback | None,
    index: int,
    record: SubtopicRecord,
    sources: list[Source],
) -> None:
    if callback is None:
        return
    outcome = callback(index, record.model_copy(deep=True), list(sources))
    if inspect.isawaitable(outcome):
        await outcome


def _load_json(text: str) -> Any | None:
    """Parse *text* as JSON, tolerating markdown code fences.  None if invalid."""
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None


def _clean_titles(items: Sequence[Any]) -> list[str]:
    titles: list[str] = []
    for item in items:
        title = str(item).strip().strip('"').strip()
        if title and title not in titles:
            titles.append(title)
    return titles


def _parse_plan(result: GenerationResult) -> list[str]:
    """Subtopic titles from a plan response.

    Accepts ``{"subtopics": [...]}``, a bare JSON list, or (malformed output)
    bullet / numbered lines in plain text.
    """
    data = _load_json(result.text)
    if isinstance(data, dict):
        data = data.get("subtopics")
    if isinstance(data, list):
        titles = _clean_titles(data)
    else:
        titles = _clean_titles(
            m.group(1) for line in result.text.splitlines() if (m := _LIST_ITEM_RE.match(line))
        )

    if not titles:
        raise MalformedResponseError("Plan response contained no subtopics")
    if len(titles) < MIN_PLAN_SIZE:
        logger.warning("plan_too_short", subtopics=len(titles))
    return titles[:MAX_PLAN_SIZE]


def _parse_research(result: GenerationResult) -> SubtopicResult:
    """Content + sources; raw text becomes the content when JSON is malformed."""
    data = _load_json(result.text)
    if isinstance(data, dict) and isinstance(data.get("content"), str):
        parsed: list[Source] = []
        for item in data.get("sources") or []:
            if isinstance(item, dict) and (item.get("uri") or item.get("url")):
                uri = item.get("uri") or item.get("url")
                parsed.append(Source(uri=uri, title=item.get("title") or uri))
        return SubtopicResult(
            content=data["content"],
            sources=merge_sources(parsed, result.sources),
        )
    logger.debug("research_response_unstructured", chars=len(result.text))
    return SubtopicResult(content=result.text, sources=list(result.sources))


def _parse_report(text: str, titles: Sequence[str]) -> FinalReport:
    """FinalReport from a synthesis response; raw text becomes the report when malformed."""
    data = _load_json(text)
    if isinstance(data, dict) and isinstance(data.get("report"), str) and data["report"].strip():
        summary = data.get("summary") if isinstance(data.get("summary"), list) else []
        report = data["report"]
    else:
        if not text.strip():
            raise MalformedResponseError("Synthesis response was empty")
        summary, report = [], text
    return FinalReport(summary=normalize_summary(summary, report, titles), report=report)
