from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from docstate.errors import ValidationError
from docstate.models import ParagraphSnapshot, ParagraphUpdate, RunData
from docstate.utils.clock import now
from docstate.utils.tree import node_to_paragraph_fields, paragraph_to_node

logger = structlog.get_logger(__name__)


def new_paragraph_id() -> str:
    return f"para-{uuid4().hex}"


def coerce_update(changes: Union[ParagraphUpdate, Dict[str, Any]]) -> ParagraphUpdate:
    if isinstance(changes, ParagraphUpdate):
        return changes
    try:
        return ParagraphUpdate.model_validate(changes)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed paragraph changes: {e}") from e


@dataclass
class Run:
    """An inline span of text sharing one set of character formatting."""

    text: str = ""
    bold: bool = False
    italic: bool = False
    underline: bool = False
    font_family: Optional[str] = None
    font_size: Optional[float] = None
    color: Optional[str] = None

    @classmethod
    def from_data(cls, data: Any) -> "Run":
        if isinstance(data, Run):
            return deepcopy(data)
        if isinstance(data, RunData):
            return cls(**data.model_dump())
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in dict(data).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_text(self, text: str) -> "Run":
        """Same character formatting, different text."""
        return Run(
            text=text,
            bold=self.bold,
            italic=self.italic,
            underline=self.underline,
            font_family=self.font_family,
            font_size=self.font_size,
            color=self.color,
        )


@dataclass
class Spacing:
    line: Optional[float] = None
    before: Optional[float] = None
    after: Optional[float] = None


@dataclass
class Indentation:
    first_line: Optional[float] = None
    left: Optional[float] = None
    right: Optional[float] = None
    hanging: Optional[float] = None


@dataclass
class ParagraphFormatting:
    alignment: Optional[str] = None
    style_name: Optional[str] = None
    spacing: Spacing = field(default_factory=Spacing)
    indentation: Indentation = field(default_factory=Indentation)
    # Anything the converter reports that the engine does not model.
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ParagraphFormatting":
        return cls().merged(data or {})

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "alignment": self.alignment,
            "style_name": self.style_name,
            "spacing": asdict(self.spacing),
            "indentation": asdict(self.indentation),
        }
        result.update(deepcopy(self.extra))
        return result

    def merged(self, partial: Dict[str, Any]) -> "ParagraphFormatting":
        """
        Returns a copy with `partial` applied. Nested spacing/indentation dicts
        merge key by key; other keys replace.
        """
        result = deepcopy(self)
        for key, value in partial.items():
            if key in ("alignment", "style_name"):
                setattr(result, key, value)
            elif key == "spacing":
                result.spacing = _merge_dataclass(result.spacing, value)
            elif key == "indentation":
                result.indentation = _merge_dataclass(result.indentation, value)
            else:
                result.extra[key] = deepcopy(value)
        return result


def _merge_dataclass(target, partial: Any):
    if not isinstance(partial, dict):
        raise ValueError(f"Expected a mapping for {type(target).__name__.lower()}, got {type(partial).__name__}")
    known = {f.name for f in fields(target)}
    unknown = set(partial) - known
    if unknown:
        raise ValueError(f"Unknown {type(target).__name__.lower()} keys: {sorted(unknown)}")
    values = asdict(target)
    values.update(partial)
    return type(target)(**values)


@dataclass
class ParagraphEntity:
    """
    The atomic unit of document content.

    `change_sequence` counts effective mutations; `last_modified` moves with it.
    Instances are owned by DocumentState; everyone else works on copies.
    """

    id: str = field(default_factory=new_paragraph_id)
    text: str = ""
    runs: List[Run] = field(default_factory=list)
    formatting: ParagraphFormatting = field(default_factory=ParagraphFormatting)
    index: int = 0
    change_sequence: int = 0
    last_modified: float = field(default_factory=now)

    @classmethod
    def from_data(cls, data: Dict[str, Any], index: int = 0, paragraph_id: Optional[str] = None) -> "ParagraphEntity":
        """Builds a paragraph from an upload-converter paragraph dict."""
        text = data.get("text") or ""
        runs = [Run.from_data(r) for r in data.get("runs") or [] if r.get("text")]
        if not runs and text:
            runs = [Run(text=text)]

        formatting = dict(data.get("formatting") or {})
        for key in ("alignment", "spacing", "indentation"):
            if data.get(key) and key not in formatting:
                formatting[key] = data[key]
        if data.get("style") and "style_name" not in formatting:
            formatting["style_name"] = data["style"]

        return cls(
            id=paragraph_id or data.get("id") or new_paragraph_id(),
            text=text,
            runs=runs,
            formatting=ParagraphFormatting.from_dict(formatting),
            index=index,
        )

    @classmethod
    def from_node(cls, node: Dict[str, Any], index: int, paragraph_id: str) -> "ParagraphEntity":
        values = node_to_paragraph_fields(node)
        return cls(
            id=paragraph_id,
            text=values["text"],
            runs=[Run.from_data(r) for r in values["runs"]],
            formatting=ParagraphFormatting.from_dict(values["formatting"]),
            index=index,
        )

    def apply(self, changes: ParagraphUpdate) -> List[str]:
        """
        Applies the fields present in `changes`. Returns the names of the
        fields that actually changed; an empty list means a no-op and leaves
        change_sequence and last_modified untouched.

        `index` is ignored here: positions are owned by DocumentState.
        """
        changed: List[str] = []

        new_runs = [Run.from_data(r) for r in changes.runs] if changes.runs is not None else None
        new_text = changes.text
        if new_text is None and new_runs is not None:
            new_text = "".join(r.text for r in new_runs)

        if new_text is not None and new_text != self.text:
            self.text = new_text
            changed.append("text")
            if new_runs is None:
                # keep the character formatting of the first run
                template = self.runs[0] if self.runs else Run()
                new_runs = [template.with_text(new_text)] if new_text else []

        if new_runs is not None and new_runs != self.runs:
            self.runs = new_runs
            changed.append("runs")

        if changes.formatting is not None:
            merged = self.formatting.merged(changes.formatting)
            if merged != self.formatting:
                self.formatting = merged
                changed.append("formatting")

        if changed:
            self.touch()
        return changed

    def touch(self) -> None:
        self.change_sequence += 1
        self.last_modified = now()

    def to_node(self) -> Dict[str, Any]:
        return paragraph_to_node(
            self.id, self.text, [r.to_dict() for r in self.runs], self.formatting.to_dict()
        )

    def snapshot(self) -> ParagraphSnapshot:
        return ParagraphSnapshot(
            id=self.id,
            index=self.index,
            text=self.text,
            runs=[RunData(**r.to_dict()) for r in self.runs],
            formatting=self.formatting.to_dict(),
            change_sequence=self.change_sequence,
        )

    def get_statistics(self) -> Dict[str, int]:
        words = self.text.split()
        return {
            "characters": len(self.text),
            "characters_no_spaces": len("".join(words)),
            "words": len(words),
            "runs": len(self.runs),
        }
