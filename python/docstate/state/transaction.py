from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Union

import structlog

from docstate.errors import DocStateError, NotFoundError, TransactionError, ValidationError
from docstate.models import ParagraphUpdate
from docstate.state.paragraph import ParagraphEntity, ParagraphFormatting, Run, coerce_update

if TYPE_CHECKING:
    from docstate.state.document import DocumentState

logger = structlog.get_logger(__name__)


class TransactionStatus(str, Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


class StagedKind(str, Enum):
    UPDATE = "update"
    ADD = "add"
    REMOVE = "remove"
    MOVE = "move"


@dataclass
class StagedOperation:
    kind: StagedKind
    paragraph_id: str
    update: Optional[ParagraphUpdate] = None
    paragraph: Optional[ParagraphEntity] = None
    index: Optional[int] = None
    # What undoing this operation in isolation needs. Captured at staging,
    # refreshed when the operation executes.
    rollback: Dict[str, Any] = field(default_factory=dict)
    executed: bool = False
    effective: bool = False


class DocumentTransaction:
    """
    Stages paragraph mutations and applies them atomically.

    open -> committed | rolled-back. Both end states are terminal. A failing
    commit reverts the operations it already executed, in reverse order,
    before raising TransactionError.

        with state.transaction("Apply fix") as txn:
            txn.update_paragraph(pid, {"text": "..."})
    """

    def __init__(self, state: "DocumentState", description: str = ""):
        self.state = state
        self.description = description
        self.status = TransactionStatus.OPEN
        self._operations: List[StagedOperation] = []

    # --- Staging ---

    def update_paragraph(self, paragraph_id: str, changes: Union[ParagraphUpdate, Dict[str, Any]]) -> None:
        self._ensure_open()
        self._ensure_known(paragraph_id)
        update = coerce_update(changes)
        self._stage(
            StagedOperation(
                kind=StagedKind.UPDATE,
                paragraph_id=paragraph_id,
                update=update,
                rollback=self._current_record(paragraph_id),
            )
        )

    def add_paragraph(
        self,
        data: Union[ParagraphUpdate, Dict[str, Any], None] = None,
        index: Optional[int] = None,
        paragraph_id: Optional[str] = None,
    ) -> str:
        """Stages a new paragraph and returns the id it will have."""
        self._ensure_open()
        if index is not None and index < 0:
            raise ValidationError(f"Paragraph index must be >= 0, got {index}")
        if paragraph_id and paragraph_id in self._staged_adds():
            raise ValidationError(f"Duplicate paragraph id: {paragraph_id}")

        update = coerce_update(data or {})
        resolved_id = self.state._resolve_paragraph_id(paragraph_id)
        text = update.text
        runs = [Run.from_data(r) for r in update.runs or []]
        if text is None:
            text = "".join(r.text for r in runs)
        if not runs and text:
            runs = [Run(text=text)]
        try:
            formatting = ParagraphFormatting.from_dict(update.formatting)
        except ValueError as e:
            raise ValidationError(f"Invalid formatting for new paragraph: {e}") from e

        paragraph = ParagraphEntity(id=resolved_id, text=text, runs=runs, formatting=formatting)
        self._stage(StagedOperation(kind=StagedKind.ADD, paragraph_id=resolved_id, paragraph=paragraph, index=index))
        return resolved_id

    def remove_paragraph(self, paragraph_id: str) -> None:
        self._ensure_open()
        self._ensure_known(paragraph_id)
        self._stage(
            StagedOperation(
                kind=StagedKind.REMOVE,
                paragraph_id=paragraph_id,
                rollback=self._current_record(paragraph_id),
            )
        )

    def move_paragraph(self, paragraph_id: str, index: int) -> None:
        self._ensure_open()
        self._ensure_known(paragraph_id)
        if index < 0:
            raise ValidationError(f"Paragraph index must be >= 0, got {index}")
        self._stage(
            StagedOperation(
                kind=StagedKind.MOVE,
                paragraph_id=paragraph_id,
                index=index,
                rollback=self._current_record(paragraph_id),
            )
        )

    def _stage(self, operation: StagedOperation) -> None:
        self._operations.append(operation)

    def _current_record(self, paragraph_id: str) -> Dict[str, Any]:
        if not self.state.has_paragraph(paragraph_id):
            # added earlier in this transaction
            return {}
        return {
            "paragraph": self.state.get_paragraph(paragraph_id),
            "index": self.state.paragraph_order.index(paragraph_id),
            "issues": [],
        }

    def _staged_adds(self) -> Set[str]:
        return {op.paragraph_id for op in self._operations if op.kind == StagedKind.ADD}

    def _ensure_known(self, paragraph_id: str) -> None:
        known = set(self.state.paragraph_order)
        for op in self._operations:
            if op.kind == StagedKind.ADD:
                known.add(op.paragraph_id)
            elif op.kind == StagedKind.REMOVE:
                known.discard(op.paragraph_id)
        if paragraph_id not in known:
            raise NotFoundError("paragraph", paragraph_id)

    def _ensure_open(self) -> None:
        if self.status != TransactionStatus.OPEN:
            raise TransactionError(f"Transaction is {self.status.value}")

    # --- Execution ---

    @property
    def operations(self) -> List[Dict[str, Any]]:
        return [{"kind": op.kind.value, "paragraph_id": op.paragraph_id, "index": op.index} for op in self._operations]

    def commit(self) -> int:
        """Executes every staged operation and bumps the version once. Returns the new version."""
        self._ensure_open()

        try:
            for operation in self._operations:
                self._execute(operation)
        except Exception as e:
            logger.warning(f"Transaction '{self.description}' failed, rolling back: {e}")
            self._revert_executed()
            self.status = TransactionStatus.ROLLED_BACK
            if isinstance(e, TransactionError):
                raise
            raise TransactionError(f"Commit failed: {e}") from e

        self.status = TransactionStatus.COMMITTED
        effective = [op for op in self._operations if op.effective]
        summary = ", ".join(f"{op.kind.value} {op.paragraph_id}" for op in effective) or "no effective changes"
        version = self.state.bump_version(
            "transaction",
            self.description or summary,
            sorted({op.paragraph_id for op in effective}),
            operations=[{"kind": op.kind.value, "paragraph_id": op.paragraph_id} for op in effective],
        )
        logger.debug(f"Committed transaction with {len(effective)}/{len(self._operations)} effective operations")
        return version

    def _execute(self, operation: StagedOperation) -> None:
        state = self.state
        if operation.kind == StagedKind.UPDATE:
            previous, changed, invalidated, old_index = state._apply_update(operation.paragraph_id, operation.update)
            operation.rollback = {"paragraph": previous, "index": old_index, "issues": invalidated}
            operation.effective = bool(changed)
        elif operation.kind == StagedKind.ADD:
            state._insert(operation.paragraph, operation.index)
            operation.effective = True
        elif operation.kind == StagedKind.REMOVE:
            paragraph, index, issues = state._detach(operation.paragraph_id)
            operation.rollback = {"paragraph": paragraph, "index": index, "issues": issues}
            operation.effective = True
        elif operation.kind == StagedKind.MOVE:
            previous, old_index = state._relocate(operation.paragraph_id, operation.index)
            operation.rollback = {"paragraph": previous, "index": old_index, "issues": []}
            operation.effective = old_index != state.paragraph_order.index(operation.paragraph_id)
        operation.executed = True

    def _revert(self, operation: StagedOperation) -> None:
        state = self.state
        record = operation.rollback
        if operation.kind == StagedKind.ADD:
            state._detach(operation.paragraph_id, retire=False)
        elif operation.kind == StagedKind.REMOVE:
            state._insert(record["paragraph"], record["index"], record["issues"])
        else:
            state._reinstate(record["paragraph"], record["index"], record["issues"])
        operation.executed = False

    def _revert_executed(self) -> None:
        for operation in reversed(self._operations):
            if not operation.executed:
                continue
            try:
                self._revert(operation)
            except DocStateError as e:
                logger.error(f"Could not revert {operation.kind.value} of {operation.paragraph_id}: {e}", exc_info=True)

    def rollback(self) -> None:
        """Discards the transaction. Calling it again is a no-op."""
        if self.status == TransactionStatus.ROLLED_BACK:
            return
        if self.status == TransactionStatus.COMMITTED:
            raise TransactionError("Cannot roll back a committed transaction")

        self._revert_executed()
        self.status = TransactionStatus.ROLLED_BACK
        logger.debug(f"Rolled back transaction '{self.description}' ({len(self._operations)} staged operations)")

    # --- Context manager ---

    def __enter__(self) -> "DocumentTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.status != TransactionStatus.OPEN:
            return False
        if exc_type is not None:
            self.rollback()
        else:
            self.commit()
        return False

    def __len__(self) -> int:
        return len(self._operations)
