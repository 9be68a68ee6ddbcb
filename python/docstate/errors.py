"""
Exception taxonomy for the document-state engine.

NotFoundError and ValidationError are programming / UI-state errors and are
never retried. TransactionError is raised from commit after the automatic
rollback. PersistenceError and AnalysisError describe collaborator failures;
the schedulers record them as state instead of raising them.
"""


class DocStateError(Exception):
    """Base class for every error raised by docstate."""


class NotFoundError(DocStateError):
    """A referenced paragraph, issue or snapshot id does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ValidationError(DocStateError):
    """Malformed input to a mutation."""


class TransactionError(DocStateError):
    """Raised by a transaction that is terminal or whose commit failed."""


class PersistenceError(DocStateError):
    """Save or upload failure."""


class AnalysisError(DocStateError):
    """The analysis collaborator raised or returned unusable data."""


class OperationInProgressError(DocStateError):
    """A non-reentrant operation (upload, fix) is already running."""
