from importlib.metadata import PackageNotFoundError, version

from docstate.config import EngineSettings
from docstate.diff import ChangeTracker
from docstate.errors import (
    AnalysisError,
    DocStateError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
    TransactionError,
    ValidationError,
)
from docstate.events import EventEmitter
from docstate.models import ChangeOperation, ChangeSet, Issue, OperationType, ParagraphUpdate, Severity
from docstate.session import EditorSession
from docstate.state.document import DocumentState
from docstate.state.issues import IssueTracker
from docstate.state.paragraph import ParagraphEntity

try:
    __version__ = version("docstate")
except PackageNotFoundError:
    # running from a source checkout without installation
    __version__ = "0.0.0-dev"

__all__ = [
    "ChangeTracker",
    "DocumentState",
    "EditorSession",
    "EngineSettings",
    "EventEmitter",
    "IssueTracker",
    "ParagraphEntity",
    "ChangeOperation",
    "ChangeSet",
    "Issue",
    "OperationType",
    "ParagraphUpdate",
    "Severity",
    "DocStateError",
    "NotFoundError",
    "ValidationError",
    "TransactionError",
    "PersistenceError",
    "AnalysisError",
    "OperationInProgressError",
    "__version__",
]
