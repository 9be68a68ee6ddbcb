from copy import deepcopy
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from docstate.errors import NotFoundError, ValidationError
from docstate.models import Issue, Severity

logger = structlog.get_logger(__name__)

IssueLike = Union[Issue, Dict[str, Any]]


def coerce_issue(issue: IssueLike) -> Issue:
    if isinstance(issue, Issue):
        return issue
    try:
        return Issue.model_validate(issue)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed issue: {e}") from e


class IssueTracker:
    """
    Owns every known issue, keyed by id, plus the paragraph -> issue ids index.
    Document-level issues have no paragraph association.
    """

    def __init__(self):
        self._issues: Dict[str, Issue] = {}
        self._paragraph_issues: Dict[str, Set[str]] = {}
        self.last_analysis_at: Optional[float] = None

    def add_issue(self, issue: IssueLike, paragraph_id: Optional[str] = None) -> Issue:
        issue = coerce_issue(issue)
        paragraph_id = paragraph_id or issue.paragraph_id
        if paragraph_id != issue.paragraph_id:
            issue = issue.model_copy(update={"paragraph_id": paragraph_id})
        else:
            issue = issue.model_copy(deep=True)

        if issue.id in self._issues:
            self._unlink(issue.id)
        self._issues[issue.id] = issue

        if paragraph_id:
            self._paragraph_issues.setdefault(paragraph_id, set()).add(issue.id)
        return issue

    def remove_issue(self, issue_id: str) -> Issue:
        if issue_id not in self._issues:
            raise NotFoundError("issue", issue_id)
        self._unlink(issue_id)
        return self._issues.pop(issue_id)

    def _unlink(self, issue_id: str) -> None:
        paragraph_id = self._issues[issue_id].paragraph_id
        ids = self._paragraph_issues.get(paragraph_id)
        if ids is None:
            return
        ids.discard(issue_id)
        if not ids:
            del self._paragraph_issues[paragraph_id]

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        issue = self._issues.get(issue_id)
        return issue.model_copy(deep=True) if issue else None

    def has_issue(self, issue_id: str) -> bool:
        return issue_id in self._issues

    def invalidate_paragraph_issues(self, paragraph_id: str) -> List[Issue]:
        """Removes and returns every issue attached to `paragraph_id`."""
        ids = self._paragraph_issues.pop(paragraph_id, set())
        removed = [self._issues.pop(issue_id) for issue_id in sorted(ids) if issue_id in self._issues]
        if removed:
            logger.debug(f"Invalidated {len(removed)} issues for paragraph {paragraph_id}")
        return removed

    def get_issues_for_paragraph(self, paragraph_id: str) -> List[Issue]:
        ids = self._paragraph_issues.get(paragraph_id, set())
        return [self._issues[i].model_copy(deep=True) for i in self._issues if i in ids]

    def get_all_issues(self) -> List[Issue]:
        return [issue.model_copy(deep=True) for issue in self._issues.values()]

    def get_document_issues(self) -> List[Issue]:
        return [issue.model_copy(deep=True) for issue in self._issues.values() if not issue.paragraph_id]

    def get_issue_stats(self) -> Dict[str, int]:
        issues = list(self._issues.values())
        return {
            "total": len(issues),
            "critical": sum(1 for i in issues if i.severity == Severity.CRITICAL),
            "major": sum(1 for i in issues if i.severity == Severity.MAJOR),
            "minor": sum(1 for i in issues if i.severity == Severity.MINOR),
        }

    def replace_all(self, issues: Iterable[IssueLike]) -> None:
        """Full analysis result: everything known before is discarded."""
        self.clear()
        for issue in issues:
            self.add_issue(issue)

    def merge_incremental(self, changed_paragraph_ids: Iterable[str], new_issues: Iterable[IssueLike]) -> Dict[str, int]:
        """
        Merges an incremental analysis result.

        Issues of changed paragraphs are replaced by the analyzer's issues for
        those paragraphs. Issues of unchanged paragraphs are kept as they are,
        even if the analyzer reported some for them. Document-level issues are
        replaced by the analyzer's document-level issues.
        """
        changed = set(changed_paragraph_ids)
        dropped = 0
        for paragraph_id in changed:
            dropped += len(self.invalidate_paragraph_issues(paragraph_id))
        for issue in self.get_document_issues():
            self.remove_issue(issue.id)
            dropped += 1

        added = ignored = 0
        for issue in new_issues:
            issue = coerce_issue(issue)
            if issue.paragraph_id and issue.paragraph_id not in changed:
                ignored += 1
                continue
            self.add_issue(issue)
            added += 1

        logger.debug(f"Incremental merge: dropped={dropped} added={added} ignored={ignored}")
        return {"dropped": dropped, "added": added, "ignored": ignored}

    def clear(self) -> None:
        self._issues.clear()
        self._paragraph_issues.clear()

    def clone(self) -> "IssueTracker":
        cloned = IssueTracker()
        cloned._issues = {k: v.model_copy(deep=True) for k, v in self._issues.items()}
        cloned._paragraph_issues = deepcopy(self._paragraph_issues)
        cloned.last_analysis_at = self.last_analysis_at
        return cloned

    def restore_issues(self, other: "IssueTracker") -> None:
        """Replaces the issue set and analysis timestamp with copies of `other`'s."""
        self._issues = {k: v.model_copy(deep=True) for k, v in other._issues.items()}
        self._paragraph_issues = deepcopy(other._paragraph_issues)
        self.last_analysis_at = other.last_analysis_at

    def __len__(self) -> int:
        return len(self._issues)
