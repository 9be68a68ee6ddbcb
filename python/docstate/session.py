"""
Composition root: one document, its schedulers and its collaborators.

    session = EditorSession(analyze=my_rules, persist=store.persist, upload=DocxUploader())
    await session.load(path)
    session.sync_with_editor(tree_from_editor)
    await session.apply_fix(issue_id)
"""

import inspect
import math
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from pydantic import BaseModel

from docstate import events as ev
from docstate.config import DEFAULT_SETTINGS, EngineSettings
from docstate.errors import (
    DocStateError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
    ValidationError,
)
from docstate.events import EventEmitter
from docstate.models import AnalysisInput, AnalysisOptions, ChangeSet, FixResult, Issue, UploadResult
from docstate.scheduling.analysis import AnalysisResult, AnalysisScheduler, AnalyzeFn
from docstate.scheduling.save import PersistFn, SaveScheduler, SaveStatus
from docstate.state.document import DocumentState

logger = structlog.get_logger(__name__)

UploadFn = Callable[[Any], Union[UploadResult, Dict[str, Any], Awaitable[Any]]]
ApplyFixFn = Callable[[AnalysisInput, Issue], Union[FixResult, Dict[str, Any], Awaitable[Any]]]

SEVERITY_WEIGHTS = {"critical": 8, "major": 4, "minor": 1.5}


class ProcessingState(BaseModel):
    is_uploading: bool = False
    is_analyzing: bool = False
    is_applying_fix: bool = False
    is_saving: bool = False
    save_status: SaveStatus = SaveStatus.SAVED
    last_error: Optional[str] = None


def compliance_score(stats: Dict[str, int]) -> int:
    """100 minus weighted issue counts, rounded half up and clamped to 0..100."""
    penalty = sum(stats.get(severity, 0) * weight for severity, weight in SEVERITY_WEIGHTS.items())
    return max(0, min(100, math.floor(100 - penalty + 0.5)))


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class EditorSession:
    def __init__(
        self,
        analyze: AnalyzeFn,
        persist: Optional[PersistFn] = None,
        upload: Optional[UploadFn] = None,
        apply_fix: Optional[ApplyFixFn] = None,
        settings: Optional[EngineSettings] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.settings = settings or DEFAULT_SETTINGS
        self.events = events or EventEmitter()
        self.state = DocumentState(settings=self.settings, events=self.events)
        self.analysis = AnalysisScheduler(self.state, analyze, self.events, self.settings)
        self.saver = SaveScheduler(self.state, persist, self.analysis, self.events, self.settings) if persist else None

        self.upload = upload
        self.fixer = apply_fix
        self.is_uploading = False
        self.is_applying_fix = False
        self.last_error: Optional[str] = None

        self._unsubscribe = [self.events.on(ev.DOCUMENT_CHANGED, self._on_document_changed)]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.analysis.cancel_pending()
        if self.saver is not None:
            self.saver.cancel()

    def _on_document_changed(self, payload: Dict[str, Any]) -> None:
        if self.saver is None or not payload.get("content_changed"):
            return
        self.saver.mark_dirty()
        self.saver.schedule_save()

    # --- Loading ---

    async def load(self, file: Any) -> Dict[str, Any]:
        """Converts `file` with the upload collaborator, then runs a full analysis."""
        if self.upload is None:
            raise DocStateError("No upload collaborator configured")
        if self.is_uploading:
            raise OperationInProgressError("An upload is already in progress")

        self.is_uploading = True
        try:
            raw = await _resolve(self.upload(file))
            result = raw if isinstance(raw, UploadResult) else UploadResult.model_validate(raw)
        except Exception as e:
            self.last_error = f"Upload failed: {e}"
            logger.error(self.last_error, exc_info=True)
            raise PersistenceError(self.last_error) from e
        finally:
            self.is_uploading = False

        return await self.open(result)

    async def open(self, result: Union[UploadResult, Dict[str, Any]]) -> Dict[str, Any]:
        """Loads an already converted document and analyzes it in full."""
        self.analysis.cancel_pending()
        self.state.load(result)
        if self.saver is not None:
            self.saver.cancel()
            self.saver.mark_saved()
        self.last_error = None
        await self.analysis.run(AnalysisOptions(force=True))
        return self.get_document_info()

    # --- Editor boundary ---

    def get_editor_content(self) -> Dict[str, Any]:
        return self.state.to_editor_tree()

    def sync_with_editor(self, tree: Any) -> ChangeSet:
        change_set = self.state.sync_with_editor(tree)
        if change_set.has_changes:
            self.analysis.schedule()
        return change_set

    # --- Analysis ---

    async def analyze(self, force: bool = False) -> AnalysisResult:
        self.analysis.cancel_pending()
        return await self.analysis.run(AnalysisOptions(force=force))

    # --- Fixes ---

    async def apply_fix(self, issue_id: str) -> bool:
        """
        Applies the fix of `issue_id` through the fix collaborator.
        The document is snapshotted first (undo point) and restored if the fix
        fails; failures are recorded in `last_error`.
        """
        if self.fixer is None:
            raise DocStateError("No fix collaborator configured")
        if self.is_applying_fix:
            raise OperationInProgressError("A fix is already being applied")

        issue = self.state.issues.get_issue(issue_id)
        if issue is None:
            raise NotFoundError("issue", issue_id)
        if not issue.has_fix:
            raise ValidationError(f"Issue {issue_id} has no automatic fix")

        self.is_applying_fix = True
        snapshot_id = self.state.create_snapshot(f"Before fix: {issue.title or issue.fix_action or issue.id}")
        try:
            raw = await _resolve(self.fixer(self.state.analysis_input(), issue))
            result = raw if isinstance(raw, FixResult) else FixResult.model_validate(raw)
            if not result.success:
                raise DocStateError(result.error or f"Fix {issue.fix_action} was not applied")

            with self.state.transaction(f"Apply fix {issue.fix_action or issue.id}") as txn:
                for paragraph_id, update in result.updates.items():
                    txn.update_paragraph(paragraph_id, update)
            if self.state.issues.has_issue(issue_id):
                self.state.remove_issue(issue_id)
        except Exception as e:
            self.state.restore_from_snapshot(snapshot_id)
            self.last_error = f"Fix failed: {e}"
            logger.error(self.last_error, exc_info=True)
            return False
        finally:
            self.is_applying_fix = False

        self.last_error = None
        logger.info(f"Applied fix {issue.fix_action} for issue {issue_id}")
        self.events.emit(
            ev.FIX_APPLIED, {"issue_id": issue_id, "fix_action": issue.fix_action, "version": self.state.version}
        )
        self.analysis.schedule()
        return True

    # --- History ---

    def undo(self) -> bool:
        return self.state.undo()

    def redo(self) -> bool:
        return self.state.redo()

    # --- Reporting ---

    @property
    def compliance_score(self) -> int:
        return compliance_score(self.state.issues.get_issue_stats())

    def processing_state(self) -> ProcessingState:
        return ProcessingState(
            is_uploading=self.is_uploading,
            is_analyzing=self.analysis.is_analyzing,
            is_applying_fix=self.is_applying_fix,
            is_saving=self.saver.is_saving if self.saver else False,
            save_status=self.saver.status if self.saver else SaveStatus.SAVED,
            last_error=self.last_error or (self.saver.last_error if self.saver else None),
        )

    def get_document_info(self) -> Dict[str, Any]:
        return {
            "id": self.state.id,
            "version": self.state.version,
            "statistics": self.state.get_statistics(),
            "issues": self.state.issues.get_issue_stats(),
            "compliance_score": self.compliance_score,
            "last_analysis_at": self.state.issues.last_analysis_at,
            "can_undo": self.state.can_undo,
            "can_redo": self.state.can_redo,
            "metadata": dict(self.state.metadata),
        }

    async def flush(self) -> None:
        """Waits for pending analysis and save work to finish."""
        await self.analysis.join()
        if self.saver is not None:
            await self.saver.join()
            await self.analysis.join()
