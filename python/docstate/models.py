import time
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _new_issue_id() -> str:
    return f"issue-{uuid4().hex[:12]}"


class Severity(str, Enum):
    CRITICAL = "Critical"
    MAJOR = "Major"
    MINOR = "Minor"


class IssueLocation(BaseModel):
    """Precise position of an issue, used for highlighting."""

    paragraph_index: Optional[int] = Field(None, ge=0)
    char_offset: Optional[int] = Field(None, ge=0)
    length: Optional[int] = Field(None, ge=0)


class Issue(BaseModel):
    """
    A rule violation reported by the analysis collaborator.
    A missing paragraph_id means the issue is document-level.
    """

    id: str = Field(default_factory=_new_issue_id)
    severity: Severity = Severity.MINOR
    category: str = "general"
    title: str = ""
    message: str = ""
    paragraph_id: Optional[str] = None
    has_fix: bool = False
    fix_action: Optional[str] = Field(
        None, description="Identifier consumed by the fix-application collaborator (e.g. 'fixFont')."
    )
    location: Optional[IssueLocation] = None


class OperationType(str, Enum):
    TEXT_REPLACE = "text-replace"
    TEXT_INSERT = "text-insert"
    TEXT_DELETE = "text-delete"
    PARAGRAPH_ADD = "paragraph-add"
    PARAGRAPH_REMOVE = "paragraph-remove"
    PARAGRAPH_MODIFY = "paragraph-modify"
    PARAGRAPH_MOVE = "paragraph-move"
    PROPERTY_ADD = "property-add"
    PROPERTY_REMOVE = "property-remove"
    PROPERTY_MODIFY = "property-modify"
    REPLACE_ALL = "replace-all"


TEXT_OPERATIONS = {OperationType.TEXT_REPLACE, OperationType.TEXT_INSERT, OperationType.TEXT_DELETE}
STRUCTURAL_OPERATIONS = {OperationType.PARAGRAPH_ADD, OperationType.PARAGRAPH_REMOVE}


class ChangeOperation(BaseModel):
    """
    One atomic content delta. Which fields are set depends on `type`:

    - text-*: position, length, old_text/new_text (replace) or text (insert/delete)
    - paragraph-add/remove: paragraph_id, index, content
    - paragraph-modify: paragraph_id, old_index/new_index, old_content/new_content, changes
    - paragraph-move: paragraph_id, old_index, new_index
    - property-*: key, old_value, new_value
    - replace-all: old_content, new_content
    """

    type: OperationType
    position: Optional[int] = None
    length: Optional[int] = None
    text: Optional[str] = None
    old_text: Optional[str] = None
    new_text: Optional[str] = None
    paragraph_id: Optional[str] = None
    index: Optional[int] = None
    old_index: Optional[int] = None
    new_index: Optional[int] = None
    content: Any = None
    old_content: Any = None
    new_content: Any = None
    key: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    changes: Dict[str, Any] = Field(default_factory=dict)


class ChangeSet(BaseModel):
    has_changes: bool = False
    type: str = "none"
    operations: List[ChangeOperation] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class RunData(BaseModel):
    text: str = ""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    font_family: Optional[str] = None
    font_size: Optional[float] = None
    color: Optional[str] = None


class ParagraphUpdate(BaseModel):
    """Fields a caller may change on a paragraph. Absent fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    text: Optional[str] = None
    runs: Optional[List[RunData]] = None
    formatting: Optional[Dict[str, Any]] = None
    index: Optional[int] = Field(None, ge=0)


class UploadResult(BaseModel):
    """Shape returned by the upload/conversion collaborator."""

    paragraphs: List[Dict[str, Any]] = Field(default_factory=list)
    formatting: Dict[str, Any] = Field(default_factory=dict)
    structure: Dict[str, Any] = Field(default_factory=dict)
    styles: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ParagraphSnapshot(BaseModel):
    id: str
    index: int
    text: str
    runs: List[RunData] = Field(default_factory=list)
    formatting: Dict[str, Any] = Field(default_factory=dict)
    change_sequence: int = 0


class AnalysisOptions(BaseModel):
    force: bool = False
    changed_paragraphs: Optional[List[str]] = Field(
        None, description="Ids of paragraphs to re-check. None means the whole document."
    )
    preserve_unchanged: bool = True


class AnalysisInput(BaseModel):
    """
    Read-only document snapshot handed to the analyzer.
    The full text is always present so context-sensitive rules work during
    incremental runs; `changed_paragraphs` narrows what needs re-checking.
    """

    version: int
    text: str
    paragraphs: List[ParagraphSnapshot]
    changed_paragraphs: Optional[List[ParagraphSnapshot]] = None
    formatting: Dict[str, Any] = Field(default_factory=dict)
    structure: Dict[str, Any] = Field(default_factory=dict)
    styles: Dict[str, Any] = Field(default_factory=dict)


class PersistSnapshot(BaseModel):
    version: int
    saved_from: float = Field(default_factory=time.time)
    paragraphs: List[ParagraphSnapshot]
    issues: List[Issue] = Field(default_factory=list)
    formatting: Dict[str, Any] = Field(default_factory=dict)
    structure: Dict[str, Any] = Field(default_factory=dict)
    styles: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PersistResult(BaseModel):
    success: bool
    saved_at: Optional[float] = None
    error: Optional[str] = None


class FixResult(BaseModel):
    """
    Outcome of the fix-application collaborator. `updates` maps paragraph ids
    to the changes the fix makes; they are committed in one transaction.
    """

    success: bool
    updates: Dict[str, ParagraphUpdate] = Field(default_factory=dict)
    error: Optional[str] = None
