"""
Authoritative, versioned model of a document's paragraphs and their issues.

DocumentState is the only writer of paragraph and issue data. Readers get
deep copies; other components refer to paragraphs by id and call back into
this API (directly or through a DocumentTransaction).
"""

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from docstate import events as ev
from docstate.config import DEFAULT_SETTINGS, EngineSettings
from docstate.diff import ChangeTracker, key_nodes
from docstate.errors import NotFoundError, ValidationError
from docstate.events import EventEmitter
from docstate.models import (
    AnalysisInput,
    ChangeSet,
    Issue,
    OperationType,
    ParagraphUpdate,
    PersistSnapshot,
    Severity,
    UploadResult,
)
from docstate.state.history import Snapshot, SnapshotHistory
from docstate.state.issues import IssueLike, IssueTracker, coerce_issue
from docstate.state.paragraph import ParagraphEntity, coerce_update, new_paragraph_id
from docstate.state.transaction import DocumentTransaction
from docstate.utils.clock import now
from docstate.utils.tree import attrs_to_formatting, is_temporary_id, node_to_paragraph_fields, tree_nodes

logger = structlog.get_logger(__name__)

ANALYSIS_FAILED_ISSUE_ID = "analysis-failed"

# Every modelled formatting field, unset. Used to reset attrs the editor dropped.
_EMPTY_FORMATTING: Dict[str, Any] = {
    "alignment": None,
    "style_name": None,
    "spacing": {"line": None, "before": None, "after": None},
    "indentation": {"first_line": None, "left": None, "right": None, "hanging": None},
}


@dataclass
class ChangeLogEntry:
    type: str
    version: int
    description: str = ""
    paragraph_ids: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: float = field(default_factory=now)


class ChangeLog:
    """Bounded, newest-first record of document-level changes."""

    def __init__(self, max_entries: int = DEFAULT_SETTINGS.change_log_size):
        self.max_entries = max_entries
        self._entries: List[ChangeLogEntry] = []

    def record(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        self._entries.insert(0, entry)
        del self._entries[self.max_entries :]
        return entry

    def get_changes(self, since: float = 0) -> List[ChangeLogEntry]:
        return [deepcopy(e) for e in self._entries if e.timestamp > since]

    def get_last_change(self) -> Optional[ChangeLogEntry]:
        return deepcopy(self._entries[0]) if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)


class DocumentState:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        events: Optional[EventEmitter] = None,
        tracker: Optional[ChangeTracker] = None,
    ):
        self.settings = settings or DEFAULT_SETTINGS
        self.events = events or EventEmitter()
        self.tracker = tracker or ChangeTracker(self.settings.diff_cache_size)

        self.id = uuid4().hex
        self.version = 1
        self.created_at = now()
        self.last_modified = self.created_at

        self._paragraphs: Dict[str, ParagraphEntity] = {}
        self._order: List[str] = []
        self._retired_ids: Set[str] = set()
        self.issues = IssueTracker()

        # Opaque blobs handed through to the analyzer and the persistence layer.
        self.formatting: Dict[str, Any] = {}
        self.structure: Dict[str, Any] = {}
        self.styles: Dict[str, Any] = {}
        self.metadata: Dict[str, Any] = {}

        self.change_log = ChangeLog(self.settings.change_log_size)
        self.history = SnapshotHistory(self.settings.max_snapshots)

        self._loaded = False
        self._stats_cache: Optional[Tuple[Any, Dict[str, Any]]] = None

    # --- Loading ---

    @classmethod
    def from_upload(
        cls,
        result: Union[UploadResult, Dict[str, Any]],
        settings: Optional[EngineSettings] = None,
        events: Optional[EventEmitter] = None,
    ) -> "DocumentState":
        state = cls(settings=settings, events=events)
        state.load(result)
        return state

    def load(self, result: Union[UploadResult, Dict[str, Any]]) -> None:
        """
        Replaces the whole document with an upload result. Issues and undo
        history are discarded. Reloading an already loaded state bumps the
        version; a fresh state keeps version 1.
        """
        if not isinstance(result, UploadResult):
            try:
                result = UploadResult.model_validate(result)
            except PydanticValidationError as e:
                raise ValidationError(f"Malformed upload result: {e}") from e

        previous_ids = set(self._order)
        self._paragraphs = {}
        self._order = []
        for index, data in enumerate(result.paragraphs):
            paragraph = ParagraphEntity.from_data(data, index=index)
            if (
                is_temporary_id(paragraph.id)
                or paragraph.id in self._paragraphs
                or paragraph.id in self._retired_ids
                or paragraph.id in previous_ids
            ):
                paragraph.id = new_paragraph_id()
            self._paragraphs[paragraph.id] = paragraph
            self._order.append(paragraph.id)
        self._retired_ids |= previous_ids

        self.formatting = deepcopy(result.formatting)
        self.structure = deepcopy(result.structure)
        self.styles = deepcopy(result.styles)
        self.metadata = deepcopy(result.metadata)

        self.issues = IssueTracker()
        self.history.clear()
        self._stats_cache = None

        logger.info(f"Loaded document with {len(self._order)} paragraphs")
        if self._loaded:
            self.bump_version("document-loaded", "Document replaced from upload", list(self._order))
        else:
            self._loaded = True
            self._log_change("document-created", "Document initialized from upload", list(self._order))
        self.events.emit(ev.DOCUMENT_LOADED, {"version": self.version, "paragraphs": len(self._order)})

    # --- Read access (copies only) ---

    @property
    def paragraph_order(self) -> Tuple[str, ...]:
        return tuple(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def has_paragraph(self, paragraph_id: str) -> bool:
        return paragraph_id in self._paragraphs

    def is_retired(self, paragraph_id: str) -> bool:
        return paragraph_id in self._retired_ids

    def get_paragraph(self, paragraph_id: str) -> ParagraphEntity:
        return deepcopy(self._require(paragraph_id))

    def iter_paragraphs(self) -> List[ParagraphEntity]:
        return [deepcopy(self._paragraphs[pid]) for pid in self._order]

    def get_changed_paragraphs(self, since: Optional[float] = None) -> List[ParagraphEntity]:
        """Paragraphs modified after `since`, in document order. None means all."""
        return [
            deepcopy(self._paragraphs[pid])
            for pid in self._order
            if since is None or self._paragraphs[pid].last_modified > since
        ]

    def get_plain_text(self) -> str:
        return "\n".join(self._paragraphs[pid].text for pid in self._order if self._paragraphs[pid].text)

    def fingerprint(self) -> Tuple[int, Tuple[Tuple[str, int], ...]]:
        """Changes whenever the version or any paragraph's content does."""
        return self.version, tuple((pid, self._paragraphs[pid].change_sequence) for pid in self._order)

    def get_statistics(self) -> Dict[str, Any]:
        fingerprint = self.fingerprint()
        if self._stats_cache and self._stats_cache[0] == fingerprint:
            return dict(self._stats_cache[1])

        word_count = char_count = paragraph_count = 0
        for pid in self._order:
            text = self._paragraphs[pid].text
            if not text.strip():
                continue
            word_count += len(text.split())
            char_count += len(text)
            paragraph_count += 1

        stats = {
            "word_count": word_count,
            "char_count": char_count,
            "paragraph_count": paragraph_count,
            "last_modified": self.last_modified,
            "version": self.version,
        }
        self._stats_cache = (fingerprint, stats)
        return dict(stats)

    def to_editor_tree(self) -> Dict[str, Any]:
        return {"type": "doc", "content": [self._paragraphs[pid].to_node() for pid in self._order]}

    def analysis_input(self, changed_ids: Optional[Iterable[str]] = None) -> AnalysisInput:
        changed = None
        if changed_ids is not None:
            wanted = set(changed_ids)
            changed = [self._paragraphs[pid].snapshot() for pid in self._order if pid in wanted]
        return AnalysisInput(
            version=self.version,
            text=self.get_plain_text(),
            paragraphs=[self._paragraphs[pid].snapshot() for pid in self._order],
            changed_paragraphs=changed,
            formatting=deepcopy(self.formatting),
            structure=deepcopy(self.structure),
            styles=deepcopy(self.styles),
        )

    def persist_snapshot(self) -> PersistSnapshot:
        return PersistSnapshot(
            version=self.version,
            paragraphs=[self._paragraphs[pid].snapshot() for pid in self._order],
            issues=self.issues.get_all_issues(),
            formatting=deepcopy(self.formatting),
            structure=deepcopy(self.structure),
            styles=deepcopy(self.styles),
            metadata=deepcopy(self.metadata),
        )

    # --- Versioning ---

    def bump_version(
        self,
        reason: str,
        description: str = "",
        paragraph_ids: Optional[List[str]] = None,
        content_changed: bool = True,
        **details: Any,
    ) -> int:
        self.version += 1
        self.last_modified = now()
        self._log_change(reason, description, paragraph_ids or [], **details)
        self.events.emit(
            ev.DOCUMENT_CHANGED, {"version": self.version, "reason": reason, "content_changed": content_changed}
        )
        return self.version

    def _log_change(self, kind: str, description: str, paragraph_ids: List[str], **details: Any) -> ChangeLogEntry:
        return self.change_log.record(
            ChangeLogEntry(
                type=kind,
                version=self.version,
                description=description,
                paragraph_ids=list(paragraph_ids),
                details=details,
            )
        )

    # --- Direct mutation ---

    def update_paragraph(self, paragraph_id: str, changes: Union[ParagraphUpdate, Dict[str, Any]]) -> bool:
        """
        Applies the fields present in `changes`. Returns False for a no-op.
        Text changes invalidate the paragraph's issues. The version is left
        alone; commit a transaction for a versioned edit. Listeners still get
        `document_changed` so the edit counts as unsaved.
        """
        previous, changed, invalidated, _ = self._apply_update(paragraph_id, changes)
        if not changed:
            return False

        self.last_modified = now()
        self._log_change(
            "paragraph-updated",
            f"Updated {', '.join(changed)}",
            [paragraph_id],
            old_text=previous.text,
            new_text=self._paragraphs[paragraph_id].text,
            invalidated_issues=len(invalidated),
        )
        self.events.emit(
            ev.DOCUMENT_CHANGED, {"version": self.version, "reason": "paragraph-updated", "content_changed": True}
        )
        return True

    def transaction(self, description: str = "") -> DocumentTransaction:
        return DocumentTransaction(self, description)

    def sync_with_editor(self, tree: Any) -> ChangeSet:
        """
        Diffs an editor tree against the current content and applies the
        result in one transaction. Nodes without a usable id become new
        paragraphs with fresh ids.
        """
        try:
            new_nodes = tree_nodes(tree)
        except TypeError as e:
            raise ValidationError(str(e)) from e

        change_set = self.tracker.detect_changes(self.to_editor_tree(), tree)
        if not change_set.has_changes:
            return change_set

        removed = [op.paragraph_id for op in change_set.operations if op.type == OperationType.PARAGRAPH_REMOVE]
        updates = {}
        for op in change_set.operations:
            if op.type != OperationType.PARAGRAPH_MODIFY:
                continue
            update = _node_update(op.new_content)
            # editor-only attrs show up as modifications that change nothing here
            if self.get_paragraph(op.paragraph_id).apply(update):
                updates[op.paragraph_id] = update

        keyed = key_nodes(new_nodes)
        added = [(index, key, node) for index, (key, node) in enumerate(keyed) if key not in self._paragraphs]
        surviving = [key for key, _ in keyed if key in self._paragraphs]
        expected_order = [pid for pid in self._order if pid not in removed]
        if not (removed or updates or added) and surviving == expected_order:
            logger.debug("Editor sync found no effective paragraph changes")
            return change_set

        txn = self.transaction("Editor sync")
        try:
            for paragraph_id in removed:
                txn.remove_paragraph(paragraph_id)
            for paragraph_id, update in updates.items():
                txn.update_paragraph(paragraph_id, update)

            final_ids = [key for key, _ in keyed]
            for index, key, node in added:
                requested = None if is_temporary_id(key) else key
                final_ids[index] = txn.add_paragraph(_node_update(node), index=index, paragraph_id=requested)

            for index, paragraph_id in enumerate(final_ids):
                txn.move_paragraph(paragraph_id, index)
            txn.commit()
        except Exception:
            txn.rollback()
            raise

        logger.debug(f"Editor sync applied {len(change_set.operations)} operations ({change_set.type})")
        return change_set

    # --- Primitives used by DocumentTransaction ---

    def _require(self, paragraph_id: str) -> ParagraphEntity:
        paragraph = self._paragraphs.get(paragraph_id)
        if paragraph is None:
            raise NotFoundError("paragraph", paragraph_id)
        return paragraph

    def _reindex(self) -> None:
        for index, pid in enumerate(self._order):
            self._paragraphs[pid].index = index
        self._stats_cache = None

    def _clamp(self, index: int, size: int) -> int:
        return max(0, min(index, size))

    def _apply_update(
        self, paragraph_id: str, changes: Union[ParagraphUpdate, Dict[str, Any]]
    ) -> Tuple[ParagraphEntity, List[str], List[Issue], int]:
        """Returns (previous entity, changed fields, invalidated issues, previous index)."""
        current = self._require(paragraph_id)
        update = coerce_update(changes)
        old_index = self._order.index(paragraph_id)

        candidate = deepcopy(current)
        try:
            changed = candidate.apply(update)
        except (ValueError, TypeError) as e:
            raise ValidationError(f"Invalid changes for paragraph {paragraph_id}: {e}") from e

        target = old_index
        if update.index is not None:
            target = self._clamp(update.index, len(self._order) - 1)
        if target != old_index:
            if not changed:
                candidate.touch()
            changed.append("index")

        if not changed:
            return deepcopy(current), [], [], old_index

        self._paragraphs[paragraph_id] = candidate
        if target != old_index:
            self._order.pop(old_index)
            self._order.insert(target, paragraph_id)
        self._reindex()

        invalidated = self.issues.invalidate_paragraph_issues(paragraph_id) if "text" in changed else []
        return current, changed, invalidated, old_index

    def _insert(self, paragraph: ParagraphEntity, index: Optional[int], issues: Iterable[Issue] = ()) -> None:
        if paragraph.id in self._paragraphs:
            raise ValidationError(f"Duplicate paragraph id: {paragraph.id}")
        position = len(self._order) if index is None else self._clamp(index, len(self._order))
        self._paragraphs[paragraph.id] = deepcopy(paragraph)
        self._order.insert(position, paragraph.id)
        self._retired_ids.discard(paragraph.id)
        for issue in issues:
            self.issues.add_issue(issue)
        self._reindex()

    def _detach(self, paragraph_id: str, retire: bool = True) -> Tuple[ParagraphEntity, int, List[Issue]]:
        paragraph = self._require(paragraph_id)
        index = self._order.index(paragraph_id)
        del self._paragraphs[paragraph_id]
        self._order.pop(index)
        if retire:
            self._retired_ids.add(paragraph_id)
        issues = self.issues.invalidate_paragraph_issues(paragraph_id)
        self._reindex()
        return paragraph, index, issues

    def _relocate(self, paragraph_id: str, index: int) -> Tuple[ParagraphEntity, int]:
        """Moves a paragraph; returns (previous entity, previous index). Touches it if it moved."""
        paragraph = self._require(paragraph_id)
        previous = deepcopy(paragraph)
        old_index = self._order.index(paragraph_id)
        target = self._clamp(index, len(self._order) - 1)
        if target != old_index:
            self._order.pop(old_index)
            self._order.insert(target, paragraph_id)
            paragraph.touch()
            self._reindex()
        return previous, old_index

    def _reinstate(self, paragraph: ParagraphEntity, index: int, issues: Iterable[Issue] = ()) -> None:
        """Puts back a previous copy of a paragraph at `index`."""
        self._require(paragraph.id)
        self._paragraphs[paragraph.id] = deepcopy(paragraph)
        self._order.remove(paragraph.id)
        self._order.insert(self._clamp(index, len(self._order)), paragraph.id)
        for issue in issues:
            self.issues.add_issue(issue)
        self._reindex()

    def _resolve_paragraph_id(self, requested: Optional[str]) -> str:
        """A caller-supplied id for a new paragraph, or a fresh one."""
        if requested and requested in self._paragraphs:
            raise ValidationError(f"Duplicate paragraph id: {requested}")
        if is_temporary_id(requested) or requested in self._retired_ids:
            return new_paragraph_id()
        return requested

    # --- Issues ---

    def resolve_issue(self, issue: IssueLike) -> Issue:
        """Fills paragraph_id from location.paragraph_index when the analyzer omitted it."""
        issue = coerce_issue(issue)
        if issue.paragraph_id or issue.location is None or issue.location.paragraph_index is None:
            return issue
        index = issue.location.paragraph_index
        if index < len(self._order):
            return issue.model_copy(update={"paragraph_id": self._order[index]})
        return issue

    def apply_analysis_result(
        self, issues: Iterable[IssueLike], changed_ids: Optional[Iterable[str]], analyzed_at: float
    ) -> int:
        """
        Merges analyzer output. `changed_ids` None means a full analysis that
        replaces every issue. Bumps the version once.
        """
        resolved = [self.resolve_issue(i) for i in issues]
        if changed_ids is None:
            self.issues.replace_all(resolved)
            mode = "full"
        else:
            changed_ids = list(changed_ids)
            self.issues.merge_incremental(changed_ids, resolved)
            mode = "incremental"

        self.issues.last_analysis_at = analyzed_at
        return self.bump_version(
            "analysis-applied",
            f"{mode.capitalize()} analysis: {len(self.issues)} issues",
            list(changed_ids) if changed_ids is not None else [],
            content_changed=False,
            mode=mode,
        )

    def record_analysis_failure(self, message: str) -> int:
        """Keeps the known issues and adds one document-level failure issue."""
        if self.issues.has_issue(ANALYSIS_FAILED_ISSUE_ID):
            self.issues.remove_issue(ANALYSIS_FAILED_ISSUE_ID)
        self.issues.add_issue(
            Issue(
                id=ANALYSIS_FAILED_ISSUE_ID,
                severity=Severity.MAJOR,
                category="system",
                title="Analysis failed",
                message=message,
            )
        )
        return self.bump_version("analysis-failed", message, content_changed=False)

    def remove_issue(self, issue_id: str) -> Issue:
        return self.issues.remove_issue(issue_id)

    def add_issue(self, issue: IssueLike, paragraph_id: Optional[str] = None) -> Issue:
        issue = self.resolve_issue(issue)
        if paragraph_id and paragraph_id not in self._paragraphs:
            raise NotFoundError("paragraph", paragraph_id)
        return self.issues.add_issue(issue, paragraph_id)

    # --- Snapshots ---

    def create_snapshot(self, description: str = "") -> str:
        snapshot = Snapshot.capture(
            description or f"Snapshot at version {self.version}",
            self.version,
            self._paragraphs,
            self._order,
            self.issues,
        )
        self.history.push(snapshot)
        logger.debug(f"Created snapshot {snapshot.id}: {snapshot.description}")
        return snapshot.id

    def restore_from_snapshot(self, snapshot: Union[Snapshot, str]) -> None:
        """Replaces paragraphs, order and issues with copies from `snapshot`. The version is not touched."""
        if isinstance(snapshot, str):
            snapshot = self.history.get(snapshot)

        current_ids = set(self._order)
        self._paragraphs = deepcopy(dict(snapshot.paragraphs))
        self._order = list(snapshot.paragraph_order)
        self.issues.restore_issues(snapshot.issues)
        self._retired_ids = (self._retired_ids | current_ids) - set(self._order)
        self._stats_cache = None

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    def undo(self) -> bool:
        snapshot = self.history.step_back()
        if snapshot is None:
            return False
        self._restore_step("undo", snapshot)
        return True

    def redo(self) -> bool:
        snapshot = self.history.step_forward()
        if snapshot is None:
            return False
        self._restore_step("redo", snapshot)
        return True

    def _restore_step(self, kind: str, snapshot: Snapshot) -> None:
        self.restore_from_snapshot(snapshot)
        self.bump_version(kind, snapshot.description, list(self._order), snapshot_id=snapshot.id)
        logger.info(f"{kind.capitalize()} restored snapshot {snapshot.id} ({snapshot.description})")
        self.events.emit(
            ev.DOCUMENT_RESTORED, {"action": kind, "snapshot_id": snapshot.id, "version": self.version}
        )


def _node_update(node: Dict[str, Any]) -> ParagraphUpdate:
    """Full replacement update for a paragraph from an editor node."""
    values = node_to_paragraph_fields(node)
    formatting = deepcopy(_EMPTY_FORMATTING)
    for key, value in attrs_to_formatting(node.get("attrs") or {}).items():
        if isinstance(value, dict):
            formatting[key].update(value)
        else:
            formatting[key] = value
    return ParagraphUpdate(text=values["text"], runs=values["runs"], formatting=formatting)

