import inspect
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from docstate import events as ev
from docstate.config import EngineSettings
from docstate.events import EventEmitter
from docstate.models import PersistResult, PersistSnapshot
from docstate.scheduling.debounce import CancellationToken, DebounceSlot
from docstate.state.document import DocumentState
from docstate.utils.clock import now

if TYPE_CHECKING:
    from docstate.scheduling.analysis import AnalysisScheduler

logger = structlog.get_logger(__name__)

PersistFn = Callable[[PersistSnapshot], Union[PersistResult, Dict[str, Any], Awaitable[Any]]]


class SaveStatus(str, Enum):
    SAVED = "saved"
    SAVING = "saving"
    UNSAVED = "unsaved"
    ERROR = "error"


class SaveScheduler:
    """
    Debounced persistence with a saved/saving/unsaved/error status.

    Failures are recorded (`status`, `last_error`) and never raised: the
    document in memory is left as it is. A successful save schedules an
    incremental analysis shortly afterwards.
    """

    def __init__(
        self,
        state: DocumentState,
        persist: PersistFn,
        analysis: Optional["AnalysisScheduler"] = None,
        events: Optional[EventEmitter] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.state = state
        self.persist = persist
        self.analysis = analysis
        self.events = events or state.events
        self.settings = settings or state.settings

        self.status = SaveStatus.SAVED
        self.last_saved_at: Optional[float] = None
        self.last_saved_version: Optional[int] = None
        self.last_error: Optional[str] = None
        self.is_saving = False

        self._trailing = False
        self._dirty_during_save = False
        self._current_token: Optional[CancellationToken] = None
        self._slot = DebounceSlot("save")

    def _set_status(self, status: SaveStatus) -> None:
        if status == self.status:
            return
        previous, self.status = self.status, status
        logger.debug(f"Save status {previous.value} -> {status.value}")
        self.events.emit(
            ev.SAVE_STATUS_CHANGED, {"status": status.value, "previous": previous.value, "error": self.last_error}
        )

    @property
    def has_unsaved_changes(self) -> bool:
        return self.status in (SaveStatus.UNSAVED, SaveStatus.ERROR)

    def mark_dirty(self) -> None:
        if self.is_saving:
            self._dirty_during_save = True
        self._set_status(SaveStatus.UNSAVED)

    def mark_saved(self) -> None:
        """For freshly loaded content that matches what is stored."""
        self.last_error = None
        self._set_status(SaveStatus.SAVED)

    def schedule_save(self, immediate: bool = False, debounce: Optional[float] = None) -> Optional[CancellationToken]:
        """
        Replaces the pending save timer. `immediate` skips the debounce delay;
        await `save()` directly to get the outcome.
        """
        delay = 0 if immediate else (self.settings.save_debounce if debounce is None else debounce)
        return self._slot.schedule(delay, self.save)

    def cancel(self) -> None:
        """Cancels the pending timer and any save in flight."""
        self._slot.cancel(reason="cancelled", include_running=True)
        if self._current_token is not None:
            self._current_token.cancel("cancelled")

    async def join(self) -> None:
        await self._slot.join()

    async def save(self, token: Optional[CancellationToken] = None) -> bool:
        token = token or CancellationToken()
        if self.is_saving:
            self._trailing = True
            logger.debug("Save already in progress; trailing save queued")
            return False
        if token.is_cancelled():
            logger.info("Save cancelled before start")
            return False

        self.is_saving = True
        self._dirty_during_save = False
        self._current_token = token
        self._set_status(SaveStatus.SAVING)
        try:
            success = await self._persist(token)
        finally:
            self.is_saving = False
            self._current_token = None

        if self._trailing:
            self._trailing = False
            self._slot.schedule(0, self.save)
        return success

    async def _persist(self, token: CancellationToken) -> bool:
        snapshot = self.state.persist_snapshot()
        if token.is_cancelled():
            logger.info("Save cancelled before persisting")
            self._set_status(SaveStatus.UNSAVED)
            return False

        try:
            raw = self.persist(snapshot)
            if inspect.isawaitable(raw):
                raw = await raw
            result = _coerce_result(raw)
        except Exception as e:
            logger.error(f"Save of version {snapshot.version} failed: {e}", exc_info=True)
            result = PersistResult(success=False, error=str(e))

        if token.is_cancelled():
            logger.info(f"Save of version {snapshot.version} cancelled; not marking saved")
            self._set_status(SaveStatus.UNSAVED)
            return False

        if not result.success:
            self.last_error = result.error or "Save failed"
            logger.warning(f"Save of version {snapshot.version} failed: {self.last_error}")
            self._set_status(SaveStatus.ERROR)
            return False

        self.last_error = None
        self.last_saved_at = result.saved_at or now()
        self.last_saved_version = snapshot.version
        self._set_status(SaveStatus.UNSAVED if self._dirty_during_save else SaveStatus.SAVED)
        logger.info(f"Saved version {snapshot.version}")

        if self.analysis is not None:
            self.analysis.schedule(delay=self.settings.post_save_analysis_delay)
        return True


def _coerce_result(raw: Any) -> PersistResult:
    if isinstance(raw, PersistResult):
        return raw
    if not raw:
        return PersistResult(success=False, error="Persistence returned no result")
    if isinstance(raw, dict):
        try:
            return PersistResult.model_validate(raw)
        except PydanticValidationError as e:
            return PersistResult(success=False, error=f"Malformed persistence result: {e}")
    return PersistResult(success=bool(raw))
