import hashlib
import json
import re
import time
from collections import OrderedDict
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from diff_match_patch import diff_match_patch

from docstate.config import DEFAULT_SETTINGS
from docstate.models import (
    STRUCTURAL_OPERATIONS,
    TEXT_OPERATIONS,
    ChangeOperation,
    ChangeSet,
    OperationType,
)
from docstate.utils.tree import (
    TEMP_ID_PREFIX,
    explicit_node_id,
    is_document_tree,
    is_node_list,
    node_formatting,
    node_text,
    tree_nodes,
    with_nodes,
)

logger = structlog.get_logger(__name__)

Op = OperationType


@dataclass
class ParagraphChange:
    id: str
    old_index: Optional[int] = None
    new_index: Optional[int] = None
    old_node: Optional[Dict[str, Any]] = None
    new_node: Optional[Dict[str, Any]] = None
    text_changed: bool = False
    formatting_changed: bool = False


@dataclass
class ParagraphClassification:
    """Every id in the union of both sides lands in exactly one bucket."""

    added: List[ParagraphChange] = field(default_factory=list)
    removed: List[ParagraphChange] = field(default_factory=list)
    modified: List[ParagraphChange] = field(default_factory=list)
    moved: List[ParagraphChange] = field(default_factory=list)
    unchanged: List[ParagraphChange] = field(default_factory=list)

    def buckets(self) -> Dict[str, List[ParagraphChange]]:
        return {
            "added": self.added,
            "removed": self.removed,
            "modified": self.modified,
            "moved": self.moved,
            "unchanged": self.unchanged,
        }

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified or self.moved)


def key_nodes(nodes: List[Dict[str, Any]]) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Pairs each node with the id used for diffing. Nodes without an id, or
    repeating an id already seen (copy/paste in the editor), get a positional
    temporary id.
    """
    seen = set()
    keyed = []
    for index, node in enumerate(nodes):
        node_key = explicit_node_id(node)
        if not node_key or node_key in seen:
            node_key = f"{TEMP_ID_PREFIX}{index}"
        seen.add(node_key)
        keyed.append((node_key, node))
    return keyed


def common_affix_lengths(old: str, new: str) -> Tuple[int, int]:
    """Returns (prefix_len, suffix_len); the suffix never overlaps the prefix."""
    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1

    suffix = 0
    limit_suffix = limit - prefix
    while suffix < limit_suffix and old[-(suffix + 1)] == new[-(suffix + 1)]:
        suffix += 1

    return prefix, suffix


def word_diff(original_text: str, modified_text: str) -> List[Tuple[int, str]]:
    """
    Word-level diff as (op, text) pairs, op in {-1, 0, 1}.
    Words are encoded as single characters so diff-match-patch never splits one.
    """
    dmp = diff_match_patch()
    chars1, chars2, token_array = _words_to_chars(original_text, modified_text)
    diffs = dmp.diff_main(chars1, chars2, False)
    dmp.diff_cleanupSemantic(diffs)
    dmp.diff_charsToLines(diffs, token_array)
    return [(op, text) for op, text in diffs]


def _words_to_chars(text1: str, text2: str) -> Tuple[str, str, List[str]]:
    token_array: List[str] = []
    token_hash: Dict[str, int] = {}
    split_pattern = r"(\s+|\w+|[^\w\s])"

    def encode_text(text: str) -> str:
        tokens = [t for t in re.split(split_pattern, text) if t]
        encoded_chars = []
        for token in tokens:
            if token not in token_hash:
                token_hash[token] = len(token_array)
                token_array.append(token)
            encoded_chars.append(chr(token_hash[token]))
        return "".join(encoded_chars)

    return encode_text(text1), encode_text(text2), token_array


class ChangeTracker:
    """
    Diff engine over plain text, structured paragraph trees and keyed records.

    Stateless apart from a bounded cache of detect_changes results keyed by a
    content hash of both sides.
    """

    def __init__(self, max_cache_size: int = DEFAULT_SETTINGS.diff_cache_size):
        self.max_cache_size = max_cache_size
        self._cache: "OrderedDict[str, ChangeSet]" = OrderedDict()

    # --- Detection ---

    def detect_changes(self, old_content: Any, new_content: Any) -> ChangeSet:
        if old_content is None or new_content is None:
            return ChangeSet(
                has_changes=True,
                type="complete-replacement",
                operations=[
                    ChangeOperation(
                        type=Op.REPLACE_ALL,
                        old_content=deepcopy(old_content),
                        new_content=deepcopy(new_content),
                    )
                ],
            )

        cache_key = self._cache_key(old_content, new_content)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached.model_copy(deep=True)

        if self._is_structured(old_content) and self._is_structured(new_content):
            operations = self._detect_paragraph_operations(tree_nodes(old_content), tree_nodes(new_content))
        elif isinstance(old_content, str) and isinstance(new_content, str):
            operations = self._detect_text_changes(old_content, new_content)
        elif isinstance(old_content, Mapping) and isinstance(new_content, Mapping):
            operations = self._detect_object_changes(old_content, new_content)
        elif old_content == new_content:
            operations = []
        else:
            operations = [
                ChangeOperation(
                    type=Op.REPLACE_ALL, old_content=deepcopy(old_content), new_content=deepcopy(new_content)
                )
            ]

        result = ChangeSet(
            has_changes=bool(operations),
            type=self._classify_change_type(operations),
            operations=operations,
        )
        self._cache_result(cache_key, result)
        return result.model_copy(deep=True)

    def detect_paragraph_changes(
        self, old_nodes: List[Dict[str, Any]], new_nodes: List[Dict[str, Any]]
    ) -> ParagraphClassification:
        old_map = {key: (index, node) for index, (key, node) in enumerate(key_nodes(old_nodes))}
        new_map = {key: (index, node) for index, (key, node) in enumerate(key_nodes(new_nodes))}
        result = ParagraphClassification()

        for key, (old_index, old_node) in old_map.items():
            if key not in new_map:
                result.removed.append(ParagraphChange(id=key, old_index=old_index, old_node=old_node))

        for key, (new_index, new_node) in new_map.items():
            if key not in old_map:
                result.added.append(ParagraphChange(id=key, new_index=new_index, new_node=new_node))
                continue

            old_index, old_node = old_map[key]
            change = ParagraphChange(
                id=key,
                old_index=old_index,
                new_index=new_index,
                old_node=old_node,
                new_node=new_node,
                text_changed=node_text(old_node) != node_text(new_node),
                formatting_changed=node_formatting(old_node) != node_formatting(new_node),
            )
            if change.text_changed or change.formatting_changed:
                result.modified.append(change)
            elif old_index != new_index:
                result.moved.append(change)
            else:
                result.unchanged.append(change)

        return result

    def _detect_paragraph_operations(self, old_nodes, new_nodes) -> List[ChangeOperation]:
        classification = self.detect_paragraph_changes(old_nodes, new_nodes)
        operations: List[ChangeOperation] = []

        for change in classification.removed:
            operations.append(
                ChangeOperation(
                    type=Op.PARAGRAPH_REMOVE,
                    paragraph_id=change.id,
                    index=change.old_index,
                    content=deepcopy(change.old_node),
                )
            )
        for change in classification.added:
            operations.append(
                ChangeOperation(
                    type=Op.PARAGRAPH_ADD,
                    paragraph_id=change.id,
                    index=change.new_index,
                    content=deepcopy(change.new_node),
                )
            )
        for change in classification.modified:
            old_text, new_text = node_text(change.old_node), node_text(change.new_node)
            operations.append(
                ChangeOperation(
                    type=Op.PARAGRAPH_MODIFY,
                    paragraph_id=change.id,
                    old_index=change.old_index,
                    new_index=change.new_index,
                    old_content=deepcopy(change.old_node),
                    new_content=deepcopy(change.new_node),
                    changes={
                        "text_changed": change.text_changed,
                        "formatting_changed": change.formatting_changed,
                        "text_diff": [list(d) for d in word_diff(old_text, new_text)] if change.text_changed else [],
                    },
                )
            )
        for change in classification.moved:
            operations.append(
                ChangeOperation(
                    type=Op.PARAGRAPH_MOVE,
                    paragraph_id=change.id,
                    old_index=change.old_index,
                    new_index=change.new_index,
                )
            )

        return operations

    def _detect_text_changes(self, old_text: str, new_text: str) -> List[ChangeOperation]:
        if old_text == new_text:
            return []

        if old_text and new_text:
            prefix_len, suffix_len = common_affix_lengths(old_text, new_text)
            if prefix_len or suffix_len:
                old_middle = old_text[prefix_len : len(old_text) - suffix_len]
                new_middle = new_text[prefix_len : len(new_text) - suffix_len]
                return [
                    ChangeOperation(
                        type=Op.TEXT_REPLACE,
                        position=prefix_len,
                        old_text=old_middle,
                        new_text=new_middle,
                        length=len(old_middle),
                    )
                ]
            return [
                ChangeOperation(
                    type=Op.TEXT_REPLACE, position=0, old_text=old_text, new_text=new_text, length=len(old_text)
                )
            ]

        if not old_text:
            return [ChangeOperation(type=Op.TEXT_INSERT, position=0, text=new_text)]
        return [ChangeOperation(type=Op.TEXT_DELETE, position=0, text=old_text, length=len(old_text))]

    def _detect_object_changes(self, old_obj: Mapping, new_obj: Mapping) -> List[ChangeOperation]:
        operations = []
        for key, value in old_obj.items():
            if key not in new_obj:
                operations.append(ChangeOperation(type=Op.PROPERTY_REMOVE, key=key, old_value=deepcopy(value)))

        for key, value in new_obj.items():
            if key not in old_obj:
                operations.append(ChangeOperation(type=Op.PROPERTY_ADD, key=key, new_value=deepcopy(value)))
            elif _canonical(old_obj[key]) != _canonical(value):
                operations.append(
                    ChangeOperation(
                        type=Op.PROPERTY_MODIFY, key=key, old_value=deepcopy(old_obj[key]), new_value=deepcopy(value)
                    )
                )
        return operations

    # --- Application ---

    def apply_changes(self, base_content: Any, change_set: ChangeSet) -> Any:
        """Replays operations against a copy of base_content; base_content is untouched."""
        result = deepcopy(base_content)
        if not change_set.operations:
            return result

        paragraph_ops = [op for op in change_set.operations if op.type.value.startswith("paragraph-")]
        if paragraph_ops and self._is_structured(result):
            return self._apply_to_tree(result, change_set.operations)

        for operation in change_set.operations:
            result = self._apply_operation(result, operation)
        return result

    def _apply_operation(self, content: Any, operation: ChangeOperation) -> Any:
        kind = operation.type

        if kind == Op.REPLACE_ALL:
            return deepcopy(operation.new_content)

        if kind in TEXT_OPERATIONS:
            if not isinstance(content, str):
                logger.debug(f"Skipping {kind.value} on non-text content")
                return content
            position = operation.position or 0
            if kind == Op.TEXT_REPLACE:
                return content[:position] + (operation.new_text or "") + content[position + (operation.length or 0) :]
            if kind == Op.TEXT_INSERT:
                return content[:position] + (operation.text or "") + content[position:]
            return content[:position] + content[position + (operation.length or 0) :]

        if kind in (Op.PROPERTY_ADD, Op.PROPERTY_MODIFY, Op.PROPERTY_REMOVE):
            if not isinstance(content, dict):
                logger.debug(f"Skipping {kind.value} on non-mapping content")
                return content
            if kind == Op.PROPERTY_REMOVE:
                content.pop(operation.key, None)
            else:
                content[operation.key] = deepcopy(operation.new_value)
            return content

        logger.debug(f"Skipping {kind.value} on unstructured content")
        return content

    def _apply_to_tree(self, tree: Any, operations: List[ChangeOperation]) -> Any:
        """
        Paragraph operations address nodes by id. Positions requested by add,
        modify and move are collected while replaying; the order is then
        materialised once, with untouched nodes filling the remaining slots in
        their existing relative order.
        """
        keyed = key_nodes(tree_nodes(tree))
        nodes: Dict[str, Dict[str, Any]] = {key: node for key, node in keyed}
        order: List[str] = [key for key, _ in keyed]
        targets: Dict[str, Tuple[int, int]] = {}

        for seq, operation in enumerate(operations):
            kind = operation.type
            pid = operation.paragraph_id

            if kind == Op.REPLACE_ALL:
                return deepcopy(operation.new_content)

            if kind == Op.PARAGRAPH_ADD:
                nodes[pid] = deepcopy(operation.content)
                if pid not in order:
                    order.append(pid)
                targets[pid] = (operation.index or 0, seq)
            elif kind == Op.PARAGRAPH_REMOVE:
                if pid not in nodes:
                    logger.warning(f"paragraph-remove for unknown paragraph {pid}")
                    continue
                del nodes[pid]
                order.remove(pid)
                targets.pop(pid, None)
            elif kind == Op.PARAGRAPH_MODIFY:
                if pid not in nodes:
                    logger.warning(f"paragraph-modify for unknown paragraph {pid}")
                    continue
                nodes[pid] = deepcopy(operation.new_content)
                targets[pid] = (operation.new_index if operation.new_index is not None else order.index(pid), seq)
            elif kind == Op.PARAGRAPH_MOVE:
                if pid not in nodes:
                    logger.warning(f"paragraph-move for unknown paragraph {pid}")
                    continue
                targets[pid] = (operation.new_index or 0, seq)
            else:
                logger.debug(f"Skipping {kind.value} on a document tree")

        placed = sorted((target, seq, pid) for pid, (target, seq) in targets.items())
        free = [pid for pid in order if pid not in targets]
        final: List[str] = []
        ti = fi = 0
        for position in range(len(order)):
            if ti < len(placed) and (placed[ti][0] <= position or fi >= len(free)):
                final.append(placed[ti][2])
                ti += 1
            else:
                final.append(free[fi])
                fi += 1

        return with_nodes(tree, [nodes[pid] for pid in final])

    # --- Reversal ---

    def create_reverse_operations(self, change_set: ChangeSet) -> ChangeSet:
        reverse_ops = [self._reverse_operation(op) for op in reversed(change_set.operations)]
        return ChangeSet(has_changes=bool(reverse_ops), type="reverse", operations=reverse_ops)

    def _reverse_operation(self, operation: ChangeOperation) -> ChangeOperation:
        kind = operation.type

        if kind == Op.TEXT_REPLACE:
            return ChangeOperation(
                type=Op.TEXT_REPLACE,
                position=operation.position,
                old_text=operation.new_text,
                new_text=operation.old_text,
                length=len(operation.new_text or ""),
            )
        if kind == Op.TEXT_INSERT:
            return ChangeOperation(
                type=Op.TEXT_DELETE,
                position=operation.position,
                text=operation.text,
                length=len(operation.text or ""),
            )
        if kind == Op.TEXT_DELETE:
            return ChangeOperation(type=Op.TEXT_INSERT, position=operation.position, text=operation.text)
        if kind == Op.PARAGRAPH_ADD:
            return operation.model_copy(update={"type": Op.PARAGRAPH_REMOVE}, deep=True)
        if kind == Op.PARAGRAPH_REMOVE:
            return operation.model_copy(update={"type": Op.PARAGRAPH_ADD}, deep=True)
        if kind == Op.PARAGRAPH_MODIFY:
            changes = deepcopy(operation.changes)
            if changes.get("text_diff"):
                changes["text_diff"] = [[-op, text] for op, text in changes["text_diff"]]
            return ChangeOperation(
                type=Op.PARAGRAPH_MODIFY,
                paragraph_id=operation.paragraph_id,
                old_index=operation.new_index,
                new_index=operation.old_index,
                old_content=deepcopy(operation.new_content),
                new_content=deepcopy(operation.old_content),
                changes=changes,
            )
        if kind == Op.PARAGRAPH_MOVE:
            return ChangeOperation(
                type=Op.PARAGRAPH_MOVE,
                paragraph_id=operation.paragraph_id,
                old_index=operation.new_index,
                new_index=operation.old_index,
            )
        if kind == Op.PROPERTY_ADD:
            return ChangeOperation(type=Op.PROPERTY_REMOVE, key=operation.key, old_value=deepcopy(operation.new_value))
        if kind == Op.PROPERTY_REMOVE:
            return ChangeOperation(type=Op.PROPERTY_ADD, key=operation.key, new_value=deepcopy(operation.old_value))
        if kind == Op.PROPERTY_MODIFY:
            return ChangeOperation(
                type=Op.PROPERTY_MODIFY,
                key=operation.key,
                old_value=deepcopy(operation.new_value),
                new_value=deepcopy(operation.old_value),
            )
        # REPLACE_ALL
        return ChangeOperation(
            type=Op.REPLACE_ALL,
            old_content=deepcopy(operation.new_content),
            new_content=deepcopy(operation.old_content),
        )

    # --- Scoring & merging ---

    def calculate_change_significance(self, change_set: ChangeSet) -> float:
        """
        Bounded 0-100 score used to throttle expensive downstream work.
        Structural edits outweigh text edits; text edits scale with the
        amount of edited text.
        """
        score = 0.0
        for op in change_set.operations:
            if op.type in STRUCTURAL_OPERATIONS:
                score += 10
            elif op.type == Op.REPLACE_ALL:
                score += 100
            elif op.type == Op.TEXT_REPLACE:
                score += _text_score(op.new_text or op.old_text)
            elif op.type in (Op.TEXT_INSERT, Op.TEXT_DELETE):
                score += _text_score(op.text)
            elif op.type == Op.PARAGRAPH_MODIFY:
                if op.changes.get("text_changed"):
                    score += _text_score(node_text(op.new_content))
                if op.changes.get("formatting_changed"):
                    score += 2
            elif op.type == Op.PARAGRAPH_MOVE:
                score += 3
            else:
                score += 1
        return min(score, 100.0)

    def merge_changes(self, change_sets: List[ChangeSet]) -> ChangeSet:
        if not change_sets:
            return ChangeSet()
        if len(change_sets) == 1:
            return change_sets[0].model_copy(deep=True)

        seen = set()
        merged: List[ChangeOperation] = []
        for change_set in change_sets:
            for op in change_set.operations:
                key = (
                    op.type,
                    op.paragraph_id or op.key,
                    op.position if op.position is not None else op.index,
                    _canonical(op.old_text if op.old_text is not None else op.old_content),
                )
                if key in seen:
                    continue
                seen.add(key)
                merged.append(op.model_copy(deep=True))

        return ChangeSet(has_changes=bool(merged), type="merged", operations=merged, timestamp=time.time())

    # --- Internals ---

    @staticmethod
    def _is_structured(content: Any) -> bool:
        return is_document_tree(content) or is_node_list(content)

    @staticmethod
    def _classify_change_type(operations: List[ChangeOperation]) -> str:
        if not operations:
            return "none"
        if len(operations) == 1:
            return operations[0].type.value

        types = {op.type for op in operations}
        if types & STRUCTURAL_OPERATIONS:
            return "structural"
        if types <= TEXT_OPERATIONS | {Op.PARAGRAPH_MODIFY}:
            return "content"
        return "mixed"

    def _cache_key(self, old_content: Any, new_content: Any) -> str:
        return f"{_hash_content(old_content)}->{_hash_content(new_content)}"

    def _cache_result(self, key: str, result: ChangeSet) -> None:
        self._cache[key] = result
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_cache_size:
            self._cache.popitem(last=False)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()


def _text_score(text: Optional[str]) -> float:
    return min(len(text or "") / 10, 5)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


def _hash_content(content: Any) -> str:
    kind = type(content).__name__
    payload = content if isinstance(content, str) else _canonical(content)
    return hashlib.sha1(f"{kind}:{payload}".encode("utf-8")).hexdigest()
