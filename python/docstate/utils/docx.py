"""
python-docx helpers for turning a document body into paragraph dicts.
"""

from typing import Any, Dict, Iterator, Optional, Union

import structlog
from docx.document import Document as DocumentObject
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml.ns import qn
from docx.shared import Length
from docx.table import Table, _Cell
from docx.text.paragraph import Paragraph
from docx.text.run import Run

logger = structlog.get_logger(__name__)

ALIGNMENTS = {
    WD_ALIGN_PARAGRAPH.LEFT: "left",
    WD_ALIGN_PARAGRAPH.CENTER: "center",
    WD_ALIGN_PARAGRAPH.RIGHT: "right",
    WD_ALIGN_PARAGRAPH.JUSTIFY: "justify",
}


def iter_block_items(parent) -> Iterator[Union[Paragraph, Table]]:
    """
    Yields Paragraph or Table objects in the order they appear in the XML.
    Supports Document and Cell objects. Recursion is left to the caller.
    """
    if isinstance(parent, DocumentObject):
        parent_elm = parent.element.body
    elif isinstance(parent, _Cell):
        parent_elm = parent._tc
    else:
        raise ValueError(f"Unsupported parent type for iteration: {type(parent)}")

    for child in parent_elm.iterchildren():
        if child.tag == qn("w:p"):
            yield Paragraph(child, parent)
        elif child.tag == qn("w:tbl"):
            yield Table(child, parent)


def heading_level(paragraph: Paragraph) -> Optional[int]:
    """
    Heading level from the paragraph style ('Heading 2' -> 2, 'Title' -> 1).
    Short, all-caps, bold 'Normal' paragraphs count as level 2.
    """
    if not paragraph.style or not paragraph.style.name:
        return None

    style_name = paragraph.style.name
    if style_name.startswith("Heading"):
        try:
            return int(style_name.replace("Heading", "").strip())
        except ValueError:
            return None

    if style_name == "Title":
        return 1

    if style_name == "Normal":
        text = paragraph.text.strip()
        if text and len(text) < 100 and text.isupper():
            runs = [r for r in paragraph.runs if r.text.strip()]
            if paragraph.style.font.bold or (runs and runs[0].bold):
                return 2

    return None


def _points(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Length):
        return round(value.pt, 2)
    return float(value)


def run_data(run: Run) -> Dict[str, Any]:
    font = run.font
    color = None
    try:
        if font.color is not None and font.color.rgb is not None:
            color = f"#{font.color.rgb}"
    except (AttributeError, ValueError):
        # theme colours have no rgb value
        color = None

    return {
        "text": run.text,
        "bold": bool(run.bold),
        "italic": bool(run.italic),
        "underline": bool(run.underline),
        "font_family": font.name,
        "font_size": _points(font.size),
        "color": color,
    }


def paragraph_data(paragraph: Paragraph) -> Dict[str, Any]:
    fmt = paragraph.paragraph_format

    first_line = _points(fmt.first_line_indent)
    hanging = None
    if first_line is not None and first_line < 0:
        first_line, hanging = None, -first_line

    return {
        "text": paragraph.text,
        "runs": [run_data(run) for run in paragraph.runs if run.text],
        "formatting": {
            "alignment": ALIGNMENTS.get(paragraph.alignment) if paragraph.alignment is not None else None,
            "style_name": paragraph.style.name if paragraph.style is not None else None,
            "spacing": {
                "line": _points(fmt.line_spacing),
                "before": _points(fmt.space_before),
                "after": _points(fmt.space_after),
            },
            "indentation": {
                "first_line": first_line,
                "left": _points(fmt.left_indent),
                "right": _points(fmt.right_indent),
                "hanging": hanging,
            },
        },
    }
