"""
Tests for docstate.state.issues: IssueTracker indexing and merging.

Run: python3 test_issues.py
From: python/
"""

import sys

sys.path.insert(0, '.')

from docstate.errors import NotFoundError, ValidationError
from docstate.models import Issue, Severity
from docstate.state.issues import IssueTracker


def _tracker():
    tracker = IssueTracker()
    tracker.add_issue(Issue(id="a1", paragraph_id="p1", severity=Severity.CRITICAL))
    tracker.add_issue(Issue(id="a2", paragraph_id="p1", severity=Severity.MINOR))
    tracker.add_issue(Issue(id="b1", paragraph_id="p2", severity=Severity.MAJOR))
    tracker.add_issue(Issue(id="d1", severity=Severity.MINOR))
    return tracker


def test_index_by_paragraph():
    tracker = _tracker()
    assert sorted(i.id for i in tracker.get_issues_for_paragraph("p1")) == ["a1", "a2"]
    assert [i.id for i in tracker.get_document_issues()] == ["d1"]
    assert tracker.get_issues_for_paragraph("nope") == []
    assert len(tracker) == 4
    print("PASS: issues are indexed by paragraph")


def test_add_issue_paragraph_override_and_replace():
    tracker = IssueTracker()
    issue = tracker.add_issue({"id": "x", "title": "t"}, paragraph_id="p9")
    assert issue.paragraph_id == "p9"
    # same id again moves it
    tracker.add_issue({"id": "x", "paragraph_id": "p3"})
    assert tracker.get_issues_for_paragraph("p9") == []
    assert [i.id for i in tracker.get_issues_for_paragraph("p3")] == ["x"]
    assert len(tracker) == 1

    try:
        tracker.add_issue({"severity": "Catastrophic"})
        assert False, "Expected ValidationError"
    except ValidationError:
        pass
    print("PASS: add_issue")


def test_returned_issues_are_copies():
    tracker = _tracker()
    issue = tracker.get_issue("a1")
    issue.title = "mutated"
    assert tracker.get_issue("a1").title == ""
    assert tracker.get_issue("zzz") is None
    print("PASS: readers return copies")


def test_remove_and_invalidate():
    tracker = _tracker()
    removed = tracker.remove_issue("a1")
    assert removed.id == "a1"
    try:
        tracker.remove_issue("a1")
        assert False, "Expected NotFoundError"
    except NotFoundError:
        pass

    invalidated = tracker.invalidate_paragraph_issues("p1")
    assert [i.id for i in invalidated] == ["a2"]
    assert tracker.invalidate_paragraph_issues("p1") == []
    assert sorted(i.id for i in tracker.get_all_issues()) == ["b1", "d1"]
    print("PASS: remove_issue and invalidate_paragraph_issues")


def test_stats():
    stats = _tracker().get_issue_stats()
    assert stats == {"total": 4, "critical": 1, "major": 1, "minor": 2}
    print("PASS: issue stats")


def test_merge_incremental():
    tracker = _tracker()
    result = tracker.merge_incremental(
        ["p1"],
        [
            Issue(id="a3", paragraph_id="p1"),
            Issue(id="b9", paragraph_id="p2"),
            {"id": "d2", "title": "doc"},
        ],
    )
    assert result == {"dropped": 3, "added": 2, "ignored": 1}
    ids = sorted(i.id for i in tracker.get_all_issues())
    # p2 keeps its old issue; its new report is ignored
    assert ids == ["a3", "b1", "d2"]
    print("PASS: incremental merge replaces only changed paragraphs")


def test_replace_all_and_clone():
    tracker = _tracker()
    tracker.last_analysis_at = 10.0
    clone = tracker.clone()

    tracker.replace_all([{"id": "n1", "paragraph_id": "p1"}])
    assert [i.id for i in tracker.get_all_issues()] == ["n1"]
    assert len(clone) == 4
    assert clone.last_analysis_at == 10.0

    tracker.last_analysis_at = 20.0
    tracker.restore_issues(clone)
    assert len(tracker) == 4
    assert tracker.last_analysis_at == 10.0, "the timestamp travels with the issues"
    print("PASS: replace_all, clone and restore_issues")


if __name__ == "__main__":
    tests = [
        test_index_by_paragraph,
        test_add_issue_paragraph_override_and_replace,
        test_returned_issues_are_copies,
        test_remove_and_invalidate,
        test_stats,
        test_merge_incremental,
        test_replace_all_and_clone,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {test.__name__}: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print(f"\n{'='*60}")
    print(f"Results: {passed} passed, {failed} failed out of {len(tests)} tests")
    if failed == 0:
        print("ALL TESTS PASSED")
    else:
        print("SOME TESTS FAILED")
