"""
Tests for docstate.diff: ChangeTracker detection, application and reversal.

Run: python3 test_diff.py
From: python/
"""

import copy
import sys

sys.path.insert(0, '.')

from docstate.diff import ChangeTracker, common_affix_lengths, word_diff
from docstate.models import ChangeSet, OperationType


def _p(pid, text, align=None):
    attrs = {"id": pid}
    if align:
        attrs["textAlign"] = align
    return {"type": "paragraph", "attrs": attrs, "content": [{"type": "text", "text": text}]}


def _doc(*nodes):
    return {"type": "doc", "content": list(nodes)}


def _round_trip(tracker, old, new):
    cs = tracker.detect_changes(old, new)
    forward = tracker.apply_changes(old, cs)
    assert forward == new, f"forward apply mismatch: {forward!r} != {new!r}"
    back = tracker.apply_changes(forward, tracker.create_reverse_operations(cs))
    assert back == old, f"reverse apply mismatch: {back!r} != {old!r}"
    return cs


def test_text_replace_middle_span():
    """'The cat sat' -> 'The dog sat' is one text-replace of the middle word."""
    cs = ChangeTracker().detect_changes("The cat sat", "The dog sat")
    assert cs.has_changes
    assert cs.type == "text-replace"
    assert len(cs.operations) == 1
    op = cs.operations[0]
    assert op.type == OperationType.TEXT_REPLACE
    assert op.old_text == "cat"
    assert op.new_text == "dog"
    assert op.position == 4
    assert op.length == 3
    print("PASS: text-replace covers only the differing middle span")


def test_text_edge_cases():
    tracker = ChangeTracker()

    cs = tracker.detect_changes("same", "same")
    assert not cs.has_changes and cs.operations == [] and cs.type == "none"

    cs = tracker.detect_changes("", "hello")
    assert [op.type for op in cs.operations] == [OperationType.TEXT_INSERT]
    assert cs.operations[0].text == "hello"

    cs = tracker.detect_changes("bye", "")
    assert [op.type for op in cs.operations] == [OperationType.TEXT_DELETE]
    assert cs.operations[0].length == 3

    # nothing shared: whole-string replace
    cs = tracker.detect_changes("abc", "xyz")
    op = cs.operations[0]
    assert op.type == OperationType.TEXT_REPLACE and op.position == 0 and op.old_text == "abc"

    assert common_affix_lengths("aaa", "aa") == (2, 0)
    assert common_affix_lengths("ab", "aXb") == (1, 1)
    print("PASS: text edge cases")


def test_absent_input_is_replace_all():
    tracker = ChangeTracker()
    for old, new in [(None, "x"), ("x", None), (None, None), (None, _doc(_p("a", "A")))]:
        cs = tracker.detect_changes(old, new)
        assert cs.type == "complete-replacement"
        assert len(cs.operations) == 1 and cs.operations[0].type == OperationType.REPLACE_ALL
    assert tracker.apply_changes(None, tracker.detect_changes(None, "x")) == "x"
    print("PASS: absent input yields a single replace-all")


def test_text_invertibility():
    tracker = ChangeTracker()
    pairs = [
        ("The cat sat", "The dog sat"),
        ("ab", "aXb"),
        ("aaa", "aa"),
        ("", "new text"),
        ("old text", ""),
        ("abc", "xyz"),
        ("prefix only", "prefix only and more"),
    ]
    for old, new in pairs:
        _round_trip(tracker, old, new)
    print("PASS: text operations are invertible")


def test_paragraph_classification_is_exhaustive():
    tracker = ChangeTracker()
    old = [_p("A", "one"), _p("B", "two"), _p("C", "three"), _p("D", "four"), _p("F", "six")]
    new = [_p("C", "three"), _p("A", "one!"), _p("E", "five"), _p("B", "two"), _p("F", "six", align="center")]

    result = tracker.detect_paragraph_changes(old, new)
    buckets = {name: [c.id for c in changes] for name, changes in result.buckets().items()}
    assert buckets["removed"] == ["D"]
    assert buckets["added"] == ["E"]
    assert sorted(buckets["modified"]) == ["A", "F"]
    assert sorted(buckets["moved"]) == ["B", "C"]

    seen = [pid for ids in buckets.values() for pid in ids]
    assert sorted(seen) == sorted({"A", "B", "C", "D", "E", "F"})
    assert len(seen) == len(set(seen))
    print("PASS: every id lands in exactly one bucket")


def test_unchanged_paragraphs():
    tracker = ChangeTracker()
    nodes = [_p("A", "one"), _p("B", "two")]
    result = tracker.detect_paragraph_changes(nodes, copy.deepcopy(nodes))
    assert [c.id for c in result.unchanged] == ["A", "B"]
    assert not result.has_changes
    assert not tracker.detect_changes(_doc(*nodes), _doc(*copy.deepcopy(nodes))).has_changes
    print("PASS: identical trees are unchanged")


def test_paragraph_operations_round_trip():
    tracker = ChangeTracker()
    old = _doc(_p("A", "one"), _p("B", "two"), _p("C", "three"), _p("D", "four"))
    new = _doc(_p("C", "three"), _p("A", "one!"), _p("E", "five"), _p("B", "two"))
    cs = _round_trip(tracker, old, new)
    assert cs.type == "structural"

    # bare node lists work the same way
    _round_trip(tracker, old["content"], new["content"])
    # pure reorder
    _round_trip(tracker, _doc(_p("A", "1"), _p("B", "2"), _p("C", "3")), _doc(_p("C", "3"), _p("A", "1"), _p("B", "2")))
    # everything replaced
    _round_trip(tracker, _doc(_p("A", "1")), _doc(_p("X", "9"), _p("Y", "8")))
    print("PASS: paragraph operations are invertible")


def test_modified_operation_carries_word_diff():
    tracker = ChangeTracker()
    cs = tracker.detect_changes(_doc(_p("A", "The cat sat")), _doc(_p("A", "The dog sat")))
    assert cs.type == OperationType.PARAGRAPH_MODIFY.value
    op = cs.operations[0]
    assert op.changes["text_changed"] is True
    assert op.changes["formatting_changed"] is False
    diffs = [tuple(d) for d in op.changes["text_diff"]]
    assert (-1, "cat") in diffs and (1, "dog") in diffs

    cs = tracker.detect_changes(_doc(_p("A", "x")), _doc(_p("A", "x", align="right")))
    op = cs.operations[0]
    assert op.changes["formatting_changed"] is True and op.changes["text_changed"] is False
    print("PASS: paragraph-modify carries text and formatting details")


def test_word_diff_keeps_words_whole():
    diffs = word_diff("Payment within thirty days", "Payment within sixty days")
    assert (-1, "thirty") in diffs
    assert (1, "sixty") in diffs
    print("PASS: word diff never splits words")


def test_duplicate_ids_are_treated_as_new():
    tracker = ChangeTracker()
    old = [_p("A", "one")]
    new = [_p("A", "one"), _p("A", "one")]
    result = tracker.detect_paragraph_changes(old, new)
    assert [c.id for c in result.unchanged] == ["A"]
    assert [c.id for c in result.added] == ["tmp-para-1"]
    _round_trip(tracker, old, new)
    print("PASS: a repeated id is diffed as an added paragraph")


def test_property_operations():
    tracker = ChangeTracker()
    old = {"a": 1, "b": {"x": 1}, "keep": True}
    new = {"b": {"x": 2}, "c": [1, 2], "keep": True}
    cs = _round_trip(tracker, old, new)
    types = sorted(op.type.value for op in cs.operations)
    assert types == ["property-add", "property-modify", "property-remove"]
    assert cs.type == "mixed"
    print("PASS: property operations")


def test_apply_never_mutates_base():
    tracker = ChangeTracker()
    old = _doc(_p("A", "one"), _p("B", "two"))
    pristine = copy.deepcopy(old)
    cs = tracker.detect_changes(old, _doc(_p("B", "two"), _p("C", "three")))
    tracker.apply_changes(old, cs)
    assert old == pristine

    props = {"k": [1]}
    tracker.apply_changes(props, tracker.detect_changes(props, {"k": [1, 2]}))
    assert props == {"k": [1]}
    print("PASS: apply_changes works on a copy")


def test_significance_scores():
    tracker = ChangeTracker()
    text = tracker.detect_changes("The cat sat", "The dog sat")
    assert abs(tracker.calculate_change_significance(text) - 0.3) < 1e-9

    long_edit = tracker.detect_changes("", "x" * 500)
    assert tracker.calculate_change_significance(long_edit) == 5

    structural = tracker.detect_changes([_p("A", "a")], [_p("B", "b")])
    assert tracker.calculate_change_significance(structural) == 20

    moved = tracker.detect_changes([_p("A", "a"), _p("B", "b")], [_p("B", "b"), _p("A", "a")])
    assert tracker.calculate_change_significance(moved) == 6

    many = tracker.detect_changes([], [_p(f"n{i}", "x") for i in range(15)])
    assert tracker.calculate_change_significance(many) == 100

    replace_all = tracker.detect_changes(None, "x")
    assert tracker.calculate_change_significance(replace_all) == 100
    assert tracker.calculate_change_significance(ChangeSet()) == 0
    print("PASS: significance scoring")


def test_cache_is_bounded_and_returns_copies():
    tracker = ChangeTracker(max_cache_size=2)
    first = tracker.detect_changes("The cat sat", "The dog sat")
    first.operations[0].new_text = "mutated"
    again = tracker.detect_changes("The cat sat", "The dog sat")
    assert again.operations[0].new_text == "dog"
    assert tracker.cache_size == 1

    tracker.detect_changes("a", "b")
    tracker.detect_changes("c", "d")
    assert tracker.cache_size == 2

    # same text but a different type must not collide
    assert tracker.detect_changes({"1": 1}, {"1": 2}).type == "property-modify"
    tracker.clear_cache()
    assert tracker.cache_size == 0
    print("PASS: bounded cache")


def test_merge_changes_drops_duplicates():
    tracker = ChangeTracker()
    cs1 = tracker.detect_changes("The cat sat", "The dog sat")
    cs2 = tracker.detect_changes({"a": 1}, {"a": 2})
    merged = tracker.merge_changes([cs1, cs2, cs1])
    assert merged.type == "merged"
    assert len(merged.operations) == 2
    assert tracker.merge_changes([]).operations == []
    print("PASS: merge_changes")


if __name__ == "__main__":
    tests = [
        test_text_replace_middle_span,
        test_text_edge_cases,
        test_absent_input_is_replace_all,
        test_text_invertibility,
        test_paragraph_classification_is_exhaustive,
        test_unchanged_paragraphs,
        test_paragraph_operations_round_trip,
        test_modified_operation_carries_word_diff,
        test_word_diff_keeps_words_whole,
        test_duplicate_ids_are_treated_as_new,
        test_property_operations,
        test_apply_never_mutates_base,
        test_significance_scores,
        test_cache_is_bounded_and_returns_copies,
        test_merge_changes_drops_duplicates,
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
