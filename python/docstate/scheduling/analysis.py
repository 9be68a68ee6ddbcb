import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog

from docstate import events as ev
from docstate.config import DEFAULT_SETTINGS, EngineSettings
from docstate.errors import AnalysisError, DocStateError
from docstate.events import EventEmitter
from docstate.models import AnalysisInput, AnalysisOptions, Issue
from docstate.scheduling.debounce import CancellationToken, DebounceSlot
from docstate.state.document import DocumentState
from docstate.state.issues import coerce_issue
from docstate.utils.clock import now

logger = structlog.get_logger(__name__)

AnalyzeFn = Callable[[AnalysisInput, AnalysisOptions], Union[List[Any], Awaitable[List[Any]]]]


class AnalysisMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SKIPPED = "skipped"


class AnalysisOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    STALE = "stale"
    DEFERRED = "deferred"


@dataclass
class AnalysisPlan:
    mode: AnalysisMode
    changed_paragraphs: Optional[List[str]] = None


@dataclass
class AnalysisResult:
    outcome: AnalysisOutcome
    mode: Optional[AnalysisMode] = None
    issue_count: int = 0
    changed_paragraphs: List[str] = field(default_factory=list)
    version: Optional[int] = None
    error: Optional[str] = None


def plan_analysis(state: DocumentState, options: Optional[AnalysisOptions] = None) -> AnalysisPlan:
    """
    First analysis or `force` -> full. Otherwise the paragraphs changed since
    the last analysis (or the ones named in the options); none -> skipped.
    """
    options = options or AnalysisOptions()
    last = state.issues.last_analysis_at
    if last is None or options.force:
        return AnalysisPlan(AnalysisMode.FULL)

    changed = [p.id for p in state.get_changed_paragraphs(last)]
    if options.changed_paragraphs is not None:
        wanted = set(options.changed_paragraphs)
        changed = [pid for pid in state.paragraph_order if pid in wanted]
    if not changed:
        return AnalysisPlan(AnalysisMode.SKIPPED)
    return AnalysisPlan(AnalysisMode.INCREMENTAL, changed)


class AnalysisScheduler:
    """
    Runs the injected `analyze` collaborator against DocumentState.

    At most one run is in flight; a request arriving meanwhile is remembered
    and run once the current one finishes. Results computed against content
    that changed while `analyze` was running are discarded and a new
    incremental run is scheduled.
    """

    def __init__(
        self,
        state: DocumentState,
        analyze: AnalyzeFn,
        events: Optional[EventEmitter] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.state = state
        self.analyze = analyze
        self.events = events or state.events
        self.settings = settings or state.settings
        self.is_analyzing = False
        self.last_result: Optional[AnalysisResult] = None
        self._rerun: Optional[AnalysisOptions] = None
        self._slot = DebounceSlot("analysis")

    # --- Scheduling ---

    def schedule(self, delay: Optional[float] = None, options: Optional[AnalysisOptions] = None) -> Optional[CancellationToken]:
        """Replaces any pending analysis timer with a new one."""
        delay = self.settings.analysis_debounce if delay is None else delay
        return self._slot.schedule(delay, lambda token: self.run(options))

    def cancel_pending(self) -> None:
        self._slot.cancel(reason="cancelled")

    @property
    def has_pending(self) -> bool:
        return self._slot.pending

    async def join(self) -> None:
        await self._slot.join()

    # --- Execution ---

    async def run(self, options: Optional[AnalysisOptions] = None) -> AnalysisResult:
        if self.is_analyzing:
            self._rerun = _merge_options(self._rerun, options)
            logger.debug("Analysis already running; request deferred")
            return AnalysisResult(outcome=AnalysisOutcome.DEFERRED)

        self.is_analyzing = True
        try:
            result = await self._run_once(options)
            while self._rerun is not None:
                rerun, self._rerun = self._rerun, None
                result = await self._run_once(rerun)
        finally:
            self.is_analyzing = False
        return result

    async def _run_once(self, options: Optional[AnalysisOptions]) -> AnalysisResult:
        options = options or AnalysisOptions()
        plan = plan_analysis(self.state, options)
        if plan.mode == AnalysisMode.SKIPPED:
            logger.debug("No paragraphs changed since last analysis; skipping")
            return self._finish(AnalysisResult(outcome=AnalysisOutcome.SKIPPED, mode=plan.mode))

        started_at = now()
        fingerprint = self.state.fingerprint()
        document = self.state.analysis_input(plan.changed_paragraphs)
        analyze_options = AnalysisOptions(
            force=options.force,
            changed_paragraphs=plan.changed_paragraphs,
            preserve_unchanged=plan.mode == AnalysisMode.INCREMENTAL,
        )
        logger.info(
            f"Running {plan.mode.value} analysis on version {document.version} "
            f"({len(plan.changed_paragraphs or document.paragraphs)} paragraphs)"
        )

        try:
            issues = await self._call_analyze(document, analyze_options)
        except Exception as e:
            message = f"Analysis failed: {e}"
            logger.error(message, exc_info=True)
            version = self.state.record_analysis_failure(message)
            result = AnalysisResult(
                outcome=AnalysisOutcome.FAILED,
                mode=plan.mode,
                changed_paragraphs=plan.changed_paragraphs or [],
                version=version,
                error=str(e),
            )
            return self._finish(result)

        if self.state.fingerprint() != fingerprint:
            logger.info(f"Discarding analysis of version {document.version}: document changed while analyzing")
            self.schedule(options=AnalysisOptions())
            return self._finish(
                AnalysisResult(
                    outcome=AnalysisOutcome.STALE,
                    mode=plan.mode,
                    changed_paragraphs=plan.changed_paragraphs or [],
                )
            )

        changed_ids = plan.changed_paragraphs if plan.mode == AnalysisMode.INCREMENTAL else None
        version = self.state.apply_analysis_result(issues, changed_ids, analyzed_at=started_at)
        return self._finish(
            AnalysisResult(
                outcome=AnalysisOutcome.COMPLETED,
                mode=plan.mode,
                issue_count=len(issues),
                changed_paragraphs=plan.changed_paragraphs or [],
                version=version,
            )
        )

    async def _call_analyze(self, document: AnalysisInput, options: AnalysisOptions) -> List[Issue]:
        raw = self.analyze(document, options)
        if inspect.isawaitable(raw):
            raw = await raw
        if raw is None:
            return []
        if not isinstance(raw, (list, tuple)):
            raise AnalysisError(f"Analyzer returned {type(raw).__name__}, expected a list of issues")
        try:
            return [coerce_issue(item) for item in raw]
        except DocStateError as e:
            raise AnalysisError(str(e)) from e

    def _finish(self, result: AnalysisResult) -> AnalysisResult:
        self.last_result = result
        self.events.emit(
            ev.ANALYSIS_COMPLETE,
            {
                "outcome": result.outcome.value,
                "mode": result.mode.value if result.mode else None,
                "issue_count": result.issue_count,
                "version": result.version,
                "error": result.error,
            },
        )
        return result


def _merge_options(current: Optional[AnalysisOptions], new: Optional[AnalysisOptions]) -> AnalysisOptions:
    new = new or AnalysisOptions()
    if current is None:
        return new
    return AnalysisOptions(force=current.force or new.force)
