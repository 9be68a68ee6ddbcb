"""
Tests for docstate.state.document: loading, paragraph updates, editor sync,
snapshots and undo/redo.

Run: python3 test_document_state.py
From: python/
"""

import sys

sys.path.insert(0, '.')

from docstate import events as ev
from docstate.config import EngineSettings
from docstate.errors import NotFoundError, ValidationError
from docstate.events import EventEmitter
from docstate.models import Issue, IssueLocation, Severity
from docstate.state.document import ANALYSIS_FAILED_ISSUE_ID, DocumentState


def _upload(*texts):
    return {"paragraphs": [{"id": f"p{i + 1}", "text": text} for i, text in enumerate(texts)]}


def _state(*texts, **settings):
    return DocumentState.from_upload(_upload(*texts), settings=EngineSettings(**settings))


def _texts(state):
    return [p.text for p in state.iter_paragraphs()]


def test_load_initializes_document():
    state = _state("Hello", "World")
    assert state.version == 1
    assert state.paragraph_order == ("p1", "p2")
    assert [p.index for p in state.iter_paragraphs()] == [0, 1]
    assert state.change_log.get_last_change().type == "document-created"
    assert len(state.issues) == 0
    assert not state.can_undo
    print("PASS: load builds paragraphs in order at version 1")


def test_load_replaces_temporary_and_duplicate_ids():
    state = DocumentState.from_upload(
        {"paragraphs": [{"text": "a"}, {"id": "tmp-para-1", "text": "b"}, {"id": "x", "text": "c"}, {"id": "x", "text": "d"}]}
    )
    order = state.paragraph_order
    assert len(set(order)) == 4
    assert order[2] == "x"
    assert all(pid.startswith("para-") for i, pid in enumerate(order) if i != 2)
    print("PASS: missing, temporary and repeated ids are replaced")


def test_reload_bumps_version_and_retires_ids():
    state = _state("Hello", "World")
    state.add_issue({"id": "i1", "paragraph_id": "p1", "title": "x"})
    state.create_snapshot("before reload")

    state.load(_upload("Other", "Text", "Here"))
    assert state.version == 2
    assert _texts(state) == ["Other", "Text", "Here"]
    # ids of the replaced document are never handed out again
    assert "p1" not in state.paragraph_order and "p2" not in state.paragraph_order
    assert state.is_retired("p1")
    assert len(state.issues) == 0
    assert len(state.history) == 0
    assert state.change_log.get_last_change().type == "document-loaded"
    print("PASS: reload bumps the version and discards issues and history")


def test_malformed_upload_raises_validation_error():
    state = DocumentState()
    try:
        state.load({"paragraphs": "not a list"})
        assert False, "Expected ValidationError"
    except ValidationError:
        pass
    print("PASS: malformed upload result")


def test_hello_world_undo_scenario():
    state = _state("Hello", "World")

    assert state.update_paragraph("p1", {"text": "Hi"}) is True
    assert state.get_paragraph("p1").change_sequence == 1
    assert state.version == 1

    state.create_snapshot("edit1")
    state.update_paragraph("p2", {"text": "Earth"})
    assert _texts(state) == ["Hi", "Earth"]

    assert state.undo() is True
    assert state.get_paragraph("p2").text == "World"
    assert state.get_paragraph("p1").text == "Hi"
    assert state.version == 2
    print("PASS: undo restores the snapshot taken after the first edit")


def test_get_paragraph_returns_copies():
    state = _state("Hello")
    copy_ = state.get_paragraph("p1")
    copy_.text = "mutated"
    copy_.runs.clear()
    assert state.get_paragraph("p1").text == "Hello"
    assert len(state.get_paragraph("p1").runs) == 1

    tree = state.to_editor_tree()
    tree["content"][0]["content"][0]["text"] = "mutated"
    assert state.get_plain_text() == "Hello"
    print("PASS: readers never expose internal objects")


def test_update_paragraph_errors_and_noops():
    state = _state("Hello")
    assert state.update_paragraph("p1", {"text": "Hello"}) is False
    assert state.get_paragraph("p1").change_sequence == 0

    try:
        state.update_paragraph("missing", {"text": "x"})
        assert False, "Expected NotFoundError"
    except NotFoundError as e:
        assert "missing" in str(e)

    for bad in ({"bogus": 1}, {"formatting": {"spacing": {"nope": 1}}}, {"index": -1}):
        try:
            state.update_paragraph("p1", bad)
            assert False, f"Expected ValidationError for {bad}"
        except ValidationError:
            pass
    assert state.get_paragraph("p1").change_sequence == 0
    print("PASS: update_paragraph no-ops and errors")


def test_text_change_invalidates_paragraph_issues():
    state = _state("Hello", "World")
    state.add_issue({"id": "i1", "paragraph_id": "p1", "title": "font"})
    state.add_issue({"id": "i2", "paragraph_id": "p2", "title": "font"})
    state.add_issue({"id": "doc", "title": "missing heading"})

    assert state.update_paragraph("p1", {"formatting": {"alignment": "center"}})
    assert state.issues.has_issue("i1"), "formatting-only change keeps issues"

    state.update_paragraph("p1", {"text": "Hi"})
    assert not state.issues.has_issue("i1")
    assert state.issues.has_issue("i2")
    assert state.issues.has_issue("doc")
    assert state.change_log.get_last_change().details["invalidated_issues"] == 1
    print("PASS: text edits invalidate only that paragraph's issues")


def test_update_keeps_first_run_formatting():
    state = DocumentState.from_upload(
        {"paragraphs": [{"id": "p1", "text": "Bold", "runs": [{"text": "Bold", "bold": True, "font_size": 12}]}]}
    )
    state.update_paragraph("p1", {"text": "Still bold"})
    runs = state.get_paragraph("p1").runs
    assert len(runs) == 1
    assert runs[0].text == "Still bold" and runs[0].bold and runs[0].font_size == 12
    print("PASS: text-only update keeps the first run's formatting")


def test_update_index_moves_paragraph():
    state = _state("a", "b", "c")
    state.update_paragraph("p3", {"index": 0})
    assert state.paragraph_order == ("p3", "p1", "p2")
    assert [p.index for p in state.iter_paragraphs()] == [0, 1, 2]
    # out of range clamps to the end
    state.update_paragraph("p3", {"index": 99})
    assert state.paragraph_order[-1] == "p3"
    print("PASS: index updates reorder paragraphs")


def test_changed_paragraphs_since():
    state = _state("a", "b", "c")
    mark = state.get_paragraph("p3").last_modified
    state.update_paragraph("p2", {"text": "B"})
    assert [p.id for p in state.get_changed_paragraphs(mark)] == ["p2"]
    assert len(state.get_changed_paragraphs()) == 3
    print("PASS: get_changed_paragraphs filters by last_modified")


def test_statistics_and_cache():
    state = _state("Hello world", "", "Second paragraph here")
    stats = state.get_statistics()
    assert stats["word_count"] == 5
    assert stats["char_count"] == len("Hello world") + len("Second paragraph here")
    assert stats["paragraph_count"] == 2
    assert stats["version"] == 1

    stats["word_count"] = 999
    assert state.get_statistics()["word_count"] == 5

    state.update_paragraph("p1", {"text": "Hello"})
    assert state.get_statistics()["word_count"] == 4
    print("PASS: statistics")


def test_change_log_is_bounded_newest_first():
    state = _state("a", change_log_size=3)
    for i in range(5):
        state.update_paragraph("p1", {"text": f"v{i}"})
    assert len(state.change_log) == 3
    entries = state.change_log.get_changes()
    assert [e.details["new_text"] for e in entries] == ["v4", "v3", "v2"]
    print("PASS: change log keeps the newest entries")


def test_snapshot_round_trip():
    state = _state("one", "two", "three")
    state.add_issue({"id": "i1", "paragraph_id": "p2", "title": "x"})
    before_paragraphs = state.iter_paragraphs()
    before_issues = state.issues.get_all_issues()
    snapshot_id = state.create_snapshot("checkpoint")

    with state.transaction("rewrite") as txn:
        txn.update_paragraph("p2", {"text": "TWO"})
        txn.remove_paragraph("p3")
        txn.add_paragraph({"text": "four"}, index=0)
    assert len(state) == 3 and state.version == 2

    state.restore_from_snapshot(snapshot_id)
    assert state.iter_paragraphs() == before_paragraphs
    assert state.issues.get_all_issues() == before_issues
    assert state.version == 2, "restore itself does not bump the version"
    print("PASS: restore_from_snapshot brings back paragraphs, order and issues")


def test_unknown_snapshot():
    state = _state("a")
    try:
        state.restore_from_snapshot("snap-missing")
        assert False, "Expected NotFoundError"
    except NotFoundError:
        pass
    print("PASS: unknown snapshot id")


def test_undo_redo_walk_history():
    events = EventEmitter()
    restored = []
    events.on(ev.DOCUMENT_RESTORED, restored.append)
    state = DocumentState.from_upload(_upload("Hello"), events=events)

    assert state.undo() is False and state.redo() is False

    state.create_snapshot("s0")
    state.update_paragraph("p1", {"text": "A"})
    state.create_snapshot("s1")
    state.update_paragraph("p1", {"text": "B"})

    assert state.undo()
    assert state.get_paragraph("p1").text == "A"
    assert state.undo()
    assert state.get_paragraph("p1").text == "Hello"
    assert not state.can_undo

    assert state.redo()
    assert state.redo()
    assert state.get_paragraph("p1").text == "A"
    assert not state.can_redo

    assert [e["action"] for e in restored] == ["undo", "undo", "redo", "redo"]
    assert state.version == 5
    print("PASS: undo/redo walk the snapshot history")


def test_new_snapshot_drops_redo_future():
    state = _state("a")
    state.create_snapshot("s0")
    state.create_snapshot("s1")
    state.create_snapshot("s2")
    state.undo()
    state.undo()
    assert state.can_redo
    state.create_snapshot("branch")
    assert not state.can_redo
    assert [s.description for s in state.history] == ["s0", "branch"]
    print("PASS: a new snapshot discards the redo future")


def test_history_is_bounded():
    state = _state("a", max_snapshots=3)
    for i in range(5):
        state.create_snapshot(f"s{i}")
    assert [s.description for s in state.history] == ["s2", "s3", "s4"]
    print("PASS: history keeps the newest snapshots")


def test_undo_of_removal_does_not_reuse_retired_ids():
    state = _state("a", "b")
    state.create_snapshot("before")
    with state.transaction() as txn:
        txn.remove_paragraph("p2")
    assert state.is_retired("p2")
    state.undo()
    assert state.paragraph_order == ("p1", "p2")
    assert not state.is_retired("p2")
    print("PASS: restoring a snapshot revives its paragraph ids")


def test_sync_with_editor_applies_edits():
    events = EventEmitter()
    changed = []
    events.on(ev.DOCUMENT_CHANGED, changed.append)
    state = DocumentState.from_upload(_upload("Hello", "World"), events=events)

    tree = state.to_editor_tree()
    tree["content"][0]["content"] = [{"type": "text", "text": "Hello there"}]
    tree["content"].append({"type": "paragraph", "content": [{"type": "text", "text": "New"}]})

    change_set = state.sync_with_editor(tree)
    assert change_set.has_changes
    assert _texts(state) == ["Hello there", "World", "New"]
    order = state.paragraph_order
    assert order[:2] == ("p1", "p2") and order[2].startswith("para-")
    assert state.version == 2
    assert len(changed) == 1 and changed[0]["content_changed"] is True

    # the editor's own tree round-trips without changes
    assert not state.sync_with_editor(state.to_editor_tree()).has_changes
    assert state.version == 2
    print("PASS: sync_with_editor commits edits in one transaction")


def test_sync_with_editor_reorder_and_remove():
    state = _state("a", "b", "c")
    nodes = state.to_editor_tree()["content"]
    state.sync_with_editor({"type": "doc", "content": [nodes[2], nodes[0]]})
    assert state.paragraph_order == ("p3", "p1")
    assert state.is_retired("p2")
    assert state.version == 2
    print("PASS: sync_with_editor handles moves and removals")


def test_sync_with_editor_formatting_and_noop_attrs():
    state = _state("a")
    tree = state.to_editor_tree()
    tree["content"][0]["attrs"]["textAlign"] = "center"
    state.sync_with_editor(tree)
    assert state.get_paragraph("p1").formatting.alignment == "center"
    assert state.version == 2

    # attrs the engine does not model change nothing
    tree = state.to_editor_tree()
    tree["content"][0]["attrs"]["dataHighlight"] = "yes"
    assert state.sync_with_editor(tree).has_changes
    assert state.version == 2

    # dropping the attr resets the alignment
    tree = state.to_editor_tree()
    del tree["content"][0]["attrs"]["textAlign"]
    state.sync_with_editor(tree)
    assert state.get_paragraph("p1").formatting.alignment is None
    print("PASS: sync_with_editor applies formatting attrs")


def test_sync_with_editor_rejects_non_tree():
    state = _state("a")
    try:
        state.sync_with_editor("plain text")
        assert False, "Expected ValidationError"
    except ValidationError:
        pass
    print("PASS: sync_with_editor validates its input")


def test_analysis_result_full_and_incremental():
    events = EventEmitter()
    changed = []
    events.on(ev.DOCUMENT_CHANGED, changed.append)
    state = DocumentState.from_upload(_upload("a", "b"), events=events)

    state.apply_analysis_result(
        [
            Issue(id="i1", paragraph_id="p1", severity=Severity.CRITICAL),
            {"id": "i2", "location": {"paragraph_index": 1}},
            {"id": "doc", "title": "document level"},
        ],
        None,
        analyzed_at=123.0,
    )
    assert state.issues.get_issue("i2").paragraph_id == "p2"
    assert state.issues.last_analysis_at == 123.0
    assert changed[-1]["content_changed"] is False

    state.apply_analysis_result([{"id": "i3", "paragraph_id": "p1"}, {"id": "i4", "paragraph_id": "p2"}], ["p1"], 124.0)
    ids = sorted(i.id for i in state.issues.get_all_issues())
    assert ids == ["i2", "i3"]
    print("PASS: analysis results merge full and incremental")


def test_record_analysis_failure_keeps_issues():
    state = _state("a")
    state.add_issue({"id": "i1", "paragraph_id": "p1"})
    version = state.record_analysis_failure("Analysis failed: boom")
    assert version == 2
    failure = state.issues.get_issue(ANALYSIS_FAILED_ISSUE_ID)
    assert failure.severity == Severity.MAJOR and failure.category == "system"
    assert state.issues.has_issue("i1")

    state.record_analysis_failure("again")
    assert len(state.issues) == 2

    state.apply_analysis_result([], ["p1"], 1.0)
    assert not state.issues.has_issue(ANALYSIS_FAILED_ISSUE_ID)
    print("PASS: analysis failures become one document-level issue")


def test_add_issue_for_unknown_paragraph():
    state = _state("a")
    try:
        state.add_issue(Issue(title="x"), paragraph_id="nope")
        assert False, "Expected NotFoundError"
    except NotFoundError:
        pass
    issue = state.add_issue(Issue(title="x", location=IssueLocation(paragraph_index=0)))
    assert issue.paragraph_id == "p1"
    print("PASS: add_issue resolves and validates paragraphs")


def test_analysis_input_and_persist_snapshot():
    state = _state("one", "two")
    state.add_issue({"id": "i1", "paragraph_id": "p1"})

    document = state.analysis_input(["p2"])
    assert document.text == "one\ntwo"
    assert [p.id for p in document.paragraphs] == ["p1", "p2"]
    assert [p.id for p in document.changed_paragraphs] == ["p2"]
    assert state.analysis_input().changed_paragraphs is None

    snapshot = state.persist_snapshot()
    assert snapshot.version == 1
    assert [p.text for p in snapshot.paragraphs] == ["one", "two"]
    assert [i.id for i in snapshot.issues] == ["i1"]
    print("PASS: analysis_input and persist_snapshot")


def test_fingerprint_tracks_content():
    state = _state("a")
    before = state.fingerprint()
    state.update_paragraph("p1", {"text": "a"})
    assert state.fingerprint() == before
    state.update_paragraph("p1", {"text": "b"})
    assert state.fingerprint() != before
    print("PASS: fingerprint changes with content")


if __name__ == "__main__":
    tests = [
        test_load_initializes_document,
        test_load_replaces_temporary_and_duplicate_ids,
        test_reload_bumps_version_and_retires_ids,
        test_malformed_upload_raises_validation_error,
        test_hello_world_undo_scenario,
        test_get_paragraph_returns_copies,
        test_update_paragraph_errors_and_noops,
        test_text_change_invalidates_paragraph_issues,
        test_update_keeps_first_run_formatting,
        test_update_index_moves_paragraph,
        test_changed_paragraphs_since,
        test_statistics_and_cache,
        test_change_log_is_bounded_newest_first,
        test_snapshot_round_trip,
        test_unknown_snapshot,
        test_undo_redo_walk_history,
        test_new_snapshot_drops_redo_future,
        test_history_is_bounded,
        test_undo_of_removal_does_not_reuse_retired_ids,
        test_sync_with_editor_applies_edits,
        test_sync_with_editor_reorder_and_remove,
        test_sync_with_editor_formatting_and_noop_attrs,
        test_sync_with_editor_rejects_non_tree,
        test_analysis_result_full_and_incremental,
        test_record_analysis_failure_keeps_issues,
        test_add_issue_for_unknown_paragraph,
        test_analysis_input_and_persist_snapshot,
        test_fingerprint_tracks_content,
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
