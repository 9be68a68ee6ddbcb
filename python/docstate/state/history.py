from copy import deepcopy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple
from uuid import uuid4

import structlog

from docstate.config import DEFAULT_SETTINGS
from docstate.errors import NotFoundError
from docstate.state.issues import IssueTracker
from docstate.state.paragraph import ParagraphEntity
from docstate.utils.clock import now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of paragraphs, order, issues and version."""

    description: str
    version: int
    paragraphs: Mapping[str, ParagraphEntity]
    paragraph_order: Tuple[str, ...]
    issues: IssueTracker
    id: str = field(default_factory=lambda: f"snap-{uuid4().hex[:12]}")
    created_at: float = field(default_factory=now)

    @classmethod
    def capture(cls, description: str, version: int, paragraphs, paragraph_order, issues: IssueTracker) -> "Snapshot":
        return cls(
            description=description,
            version=version,
            paragraphs=MappingProxyType(deepcopy(dict(paragraphs))),
            paragraph_order=tuple(paragraph_order),
            issues=issues.clone(),
        )


class SnapshotHistory:
    """
    Bounded undo/redo history.

    `position` points at the snapshot the next undo restores; redo restores
    the one after it. Taking a snapshot after an undo drops the redo future.
    """

    def __init__(self, max_snapshots: int = DEFAULT_SETTINGS.max_snapshots):
        self.max_snapshots = max_snapshots
        self._snapshots: List[Snapshot] = []
        self.position = -1

    def push(self, snapshot: Snapshot) -> None:
        if self.position < len(self._snapshots) - 1:
            discarded = len(self._snapshots) - self.position - 1
            del self._snapshots[self.position + 1 :]
            logger.debug(f"Discarded {discarded} redo snapshots")

        self._snapshots.append(snapshot)
        while len(self._snapshots) > self.max_snapshots:
            self._snapshots.pop(0)
        self.position = len(self._snapshots) - 1

    @property
    def can_undo(self) -> bool:
        return self.position >= 0 and bool(self._snapshots)

    @property
    def can_redo(self) -> bool:
        return self.position < len(self._snapshots) - 1

    def step_back(self) -> Optional[Snapshot]:
        if not self.can_undo:
            return None
        snapshot = self._snapshots[self.position]
        self.position -= 1
        return snapshot

    def step_forward(self) -> Optional[Snapshot]:
        if not self.can_redo:
            return None
        self.position += 1
        return self._snapshots[self.position]

    def get(self, snapshot_id: str) -> Snapshot:
        for snapshot in self._snapshots:
            if snapshot.id == snapshot_id:
                return snapshot
        raise NotFoundError("snapshot", snapshot_id)

    def clear(self) -> None:
        self._snapshots.clear()
        self.position = -1

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self):
        return iter(list(self._snapshots))
