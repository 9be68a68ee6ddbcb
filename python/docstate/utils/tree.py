"""
Helpers for the structured document tree exchanged with the editing surface.

Tree shape:
    {"type": "doc", "content": [
        {"type": "paragraph",
         "attrs": {"id": "...", "textAlign": "center", ...},
         "content": [{"type": "text", "text": "...", "marks": [{"type": "bold"}]}]}
    ]}

A bare list of node dicts is accepted wherever a tree is.
"""

from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple

TEMP_ID_PREFIX = "tmp-para-"

# editor attr -> path inside ParagraphFormatting.to_dict()
FORMATTING_ATTRS: Dict[str, Tuple[str, ...]] = {
    "textAlign": ("alignment",),
    "styleName": ("style_name",),
    "lineHeight": ("spacing", "line"),
    "spaceBefore": ("spacing", "before"),
    "spaceAfter": ("spacing", "after"),
    "firstLineIndent": ("indentation", "first_line"),
    "leftIndent": ("indentation", "left"),
    "rightIndent": ("indentation", "right"),
    "hangingIndent": ("indentation", "hanging"),
}


def is_document_tree(content: Any) -> bool:
    return isinstance(content, dict) and content.get("type") == "doc" and isinstance(content.get("content"), list)


def is_node_list(content: Any) -> bool:
    return isinstance(content, list) and all(isinstance(node, dict) for node in content)


def tree_nodes(content: Any) -> List[Dict[str, Any]]:
    if is_document_tree(content):
        return content["content"]
    if is_node_list(content):
        return content
    raise TypeError(f"Not a document tree: {type(content).__name__}")


def with_nodes(template: Any, nodes: List[Dict[str, Any]]) -> Any:
    """Returns a tree of the same shape as `template` holding `nodes`."""
    if is_document_tree(template):
        result = {k: v for k, v in template.items() if k != "content"}
        result["content"] = nodes
        return result
    return nodes


def explicit_node_id(node: Dict[str, Any]) -> Optional[str]:
    attrs = node.get("attrs") or {}
    node_id = attrs.get("id") or node.get("id")
    return str(node_id) if node_id else None


def node_id(node: Dict[str, Any], index: int) -> str:
    return explicit_node_id(node) or f"{TEMP_ID_PREFIX}{index}"


def is_temporary_id(paragraph_id: Optional[str]) -> bool:
    return not paragraph_id or paragraph_id.startswith(TEMP_ID_PREFIX)


def node_text(node: Any) -> str:
    if isinstance(node, str):
        return node
    if not isinstance(node, dict):
        return ""
    if isinstance(node.get("text"), str):
        return node["text"]
    return "".join(node_text(child) for child in node.get("content") or [])


def node_formatting(node: Dict[str, Any]) -> Dict[str, Any]:
    """Everything about a node except its text and its id."""
    attrs = {k: v for k, v in (node.get("attrs") or {}).items() if k != "id"}
    marks = [child.get("marks") or [] for child in node.get("content") or [] if isinstance(child, dict)]
    result: Dict[str, Any] = {"type": node.get("type"), "attrs": attrs, "marks": marks}
    if "formatting" in node:
        result["formatting"] = node["formatting"]
    return result


def marks_to_run(text_node: Dict[str, Any]) -> Dict[str, Any]:
    run: Dict[str, Any] = {"text": text_node.get("text") or ""}
    for mark in text_node.get("marks") or []:
        kind = mark.get("type")
        if kind in ("bold", "italic", "underline"):
            run[kind] = True
        elif kind == "fontFormatting":
            attrs = mark.get("attrs") or {}
            if attrs.get("fontFamily"):
                run["font_family"] = attrs["fontFamily"]
            if attrs.get("fontSize") is not None:
                try:
                    run["font_size"] = float(str(attrs["fontSize"]).rstrip("pt"))
                except ValueError:
                    pass
            if attrs.get("color"):
                run["color"] = attrs["color"]
    return run


def run_to_text_node(run: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not run.get("text"):
        return None

    node: Dict[str, Any] = {"type": "text", "text": run["text"]}
    marks: List[Dict[str, Any]] = [{"type": kind} for kind in ("bold", "italic", "underline") if run.get(kind)]

    font_attrs = {}
    if run.get("font_family"):
        font_attrs["fontFamily"] = run["font_family"]
    if run.get("font_size") is not None:
        font_attrs["fontSize"] = run["font_size"]
    if run.get("color"):
        font_attrs["color"] = run["color"]
    if font_attrs:
        marks.append({"type": "fontFormatting", "attrs": font_attrs})

    if marks:
        node["marks"] = marks
    return node


def attrs_to_formatting(attrs: Dict[str, Any]) -> Dict[str, Any]:
    """Editor attrs -> nested partial formatting dict."""
    formatting: Dict[str, Any] = {}
    for attr, path in FORMATTING_ATTRS.items():
        if attrs.get(attr) is None:
            continue
        target = formatting
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = attrs[attr]
    return formatting


def formatting_to_attrs(formatting: Dict[str, Any]) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {}
    for attr, path in FORMATTING_ATTRS.items():
        value: Any = formatting
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if value is not None:
            attrs[attr] = value
    return attrs


def node_to_paragraph_fields(node: Dict[str, Any]) -> Dict[str, Any]:
    """Extracts text, runs and formatting from an editor paragraph node."""
    runs = [
        marks_to_run(child)
        for child in node.get("content") or []
        if isinstance(child, dict) and child.get("type") == "text" and child.get("text")
    ]
    return {
        "text": node_text(node),
        "runs": runs,
        "formatting": attrs_to_formatting(node.get("attrs") or {}),
    }


def paragraph_to_node(paragraph_id: str, text: str, runs: List[Dict[str, Any]], formatting: Dict[str, Any]) -> Dict:
    attrs = {"id": paragraph_id}
    attrs.update(formatting_to_attrs(formatting))

    content = [n for n in (run_to_text_node(run) for run in runs) if n]
    if not content and text:
        content = [{"type": "text", "text": text}]

    return {"type": "paragraph", "attrs": attrs, "content": deepcopy(content)}
