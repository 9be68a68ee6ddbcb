import io
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Union

import structlog
from docx import Document
from docx.enum.style import WD_STYLE_TYPE
from docx.table import Table
from docx.text.paragraph import Paragraph

from docstate.models import UploadResult
from docstate.utils.docx import heading_level, iter_block_items, paragraph_data

logger = structlog.get_logger(__name__)

Source = Union[str, Path, bytes, BinaryIO]


class DocxUploader:
    """
    Upload collaborator that converts a .docx into an UploadResult.

    Paragraphs are taken from the main body in document order. Table cell
    paragraphs are flattened in after the paragraphs preceding the table.
    """

    def __init__(self, include_tables: bool = True, skip_empty: bool = True):
        self.include_tables = include_tables
        self.skip_empty = skip_empty

    def __call__(self, source: Source) -> UploadResult:
        return self.convert(source)

    def convert(self, source: Source) -> UploadResult:
        filename = str(source) if isinstance(source, (str, Path)) else getattr(source, "name", "document.docx")
        try:
            doc = Document(_open(source))
        except Exception as e:
            logger.error(f"Could not open {filename}: {e}", exc_info=True)
            raise ValueError(f"Could not read document: {str(e)}") from e

        paragraphs: List[Dict[str, Any]] = []
        headings: List[Dict[str, Any]] = []
        table_count = 0

        for item in iter_block_items(doc):
            if isinstance(item, Paragraph):
                self._add_paragraph(item, paragraphs, headings)
            elif isinstance(item, Table):
                table_count += 1
                if self.include_tables:
                    self._add_table(item, paragraphs, headings)

        logger.info(f"Converted {filename}: {len(paragraphs)} paragraphs, {table_count} tables")
        return UploadResult(
            paragraphs=paragraphs,
            formatting=_document_formatting(doc),
            structure={
                "headings": headings,
                "paragraph_count": len(paragraphs),
                "table_count": table_count,
                "section_count": len(doc.sections),
            },
            styles={
                "paragraph_styles": sorted(s.name for s in doc.styles if s.type == WD_STYLE_TYPE.PARAGRAPH and s.name),
                "used_styles": sorted({p["formatting"]["style_name"] for p in paragraphs if p["formatting"]["style_name"]}),
            },
            metadata=_metadata(doc, filename),
        )

    def _add_paragraph(self, paragraph: Paragraph, paragraphs: List[Dict], headings: List[Dict]) -> None:
        if self.skip_empty and not paragraph.text.strip():
            return
        level = heading_level(paragraph)
        if level is not None:
            headings.append({"index": len(paragraphs), "level": level, "text": paragraph.text.strip()})
        paragraphs.append(paragraph_data(paragraph))

    def _add_table(self, table: Table, paragraphs: List[Dict], headings: List[Dict]) -> None:
        for row in table.rows:
            seen_cells = set()
            for cell in row.cells:
                # merged cells are yielded once per grid column
                if cell._tc in seen_cells:
                    continue
                seen_cells.add(cell._tc)
                for item in iter_block_items(cell):
                    if isinstance(item, Paragraph):
                        self._add_paragraph(item, paragraphs, headings)
                    elif isinstance(item, Table):
                        self._add_table(item, paragraphs, headings)


def _open(source: Source):
    if isinstance(source, (str, Path)):
        return str(source)
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source)
    source.seek(0)
    return source


def _document_formatting(doc) -> Dict[str, Any]:
    try:
        normal = doc.styles["Normal"]
    except KeyError:
        normal = None
    formatting: Dict[str, Any] = {}
    if normal is not None:
        formatting["default_font"] = {
            "family": normal.font.name,
            "size": normal.font.size.pt if normal.font.size else None,
        }
    if doc.sections:
        section = doc.sections[0]
        formatting["page"] = {
            "width": section.page_width.pt if section.page_width else None,
            "height": section.page_height.pt if section.page_height else None,
            "margins": {
                "top": section.top_margin.pt if section.top_margin is not None else None,
                "bottom": section.bottom_margin.pt if section.bottom_margin is not None else None,
                "left": section.left_margin.pt if section.left_margin is not None else None,
                "right": section.right_margin.pt if section.right_margin is not None else None,
            },
        }
    return formatting


def _metadata(doc, filename: str) -> Dict[str, Any]:
    props = doc.core_properties
    return {
        "name": Path(filename).name,
        "title": props.title or None,
        "author": props.author or None,
        "created": props.created.isoformat() if props.created else None,
        "modified": props.modified.isoformat() if props.modified else None,
    }
