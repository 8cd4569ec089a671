from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

log = logging.getLogger(__name__)


class FieldType(str, Enum):
    """Closed set of question types; values are the form renderer's tags."""

    SHORT_TEXT = "text"
    LONG_TEXT = "textarea"
    NUMBER = "number"
    SINGLE_CHOICE = "radio"
    MULTIPLE_CHOICE = "checkbox"
    DROPDOWN = "select"

    @property
    def needs_options(self) -> bool:
        return self in CHOICE_TYPES

    @property
    def takes_placeholder(self) -> bool:
        return not self.needs_options


CHOICE_TYPES = frozenset({FieldType.SINGLE_CHOICE, FieldType.MULTIPLE_CHOICE, FieldType.DROPDOWN})

_TYPE_ALIASES: Dict[str, FieldType] = {
    "text": FieldType.SHORT_TEXT,
    "short-text": FieldType.SHORT_TEXT,
    "shorttext": FieldType.SHORT_TEXT,
    "short-answer": FieldType.SHORT_TEXT,
    "string": FieldType.SHORT_TEXT,
    "input": FieldType.SHORT_TEXT,
    "email": FieldType.SHORT_TEXT,
    "tel": FieldType.SHORT_TEXT,
    "phone": FieldType.SHORT_TEXT,
    "url": FieldType.SHORT_TEXT,
    "textarea": FieldType.LONG_TEXT,
    "long-text": FieldType.LONG_TEXT,
    "longtext": FieldType.LONG_TEXT,
    "paragraph": FieldType.LONG_TEXT,
    "long-answer": FieldType.LONG_TEXT,
    "number": FieldType.NUMBER,
    "numeric": FieldType.NUMBER,
    "integer": FieldType.NUMBER,
    "int": FieldType.NUMBER,
    "float": FieldType.NUMBER,
    "radio": FieldType.SINGLE_CHOICE,
    "single-choice": FieldType.SINGLE_CHOICE,
    "singlechoice": FieldType.SINGLE_CHOICE,
    "choice": FieldType.SINGLE_CHOICE,
    "radio-button": FieldType.SINGLE_CHOICE,
    "checkbox": FieldType.MULTIPLE_CHOICE,
    "checkboxes": FieldType.MULTIPLE_CHOICE,
    "multiple-choice": FieldType.MULTIPLE_CHOICE,
    "multiplechoice": FieldType.MULTIPLE_CHOICE,
    "multi-select": FieldType.MULTIPLE_CHOICE,
    "multiselect": FieldType.MULTIPLE_CHOICE,
    "select": FieldType.DROPDOWN,
    "dropdown": FieldType.DROPDOWN,
    "drop-down": FieldType.DROPDOWN,
    "combobox": FieldType.DROPDOWN,
}

PLACEHOLDER_OPTIONS = ("Option 1", "Option 2")
_LABEL_KEYS = ("label", "question", "name", "title")


class FieldSchemaError(ValueError):
    """Raised when the parsed payload is not a list of field objects at all."""


class FormField(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    type: FieldType
    label: str = Field(min_length=1)
    placeholder: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = self.model_dump(mode="json")
        if out.get("placeholder") is None:
            out.pop("placeholder", None)
        return out


def coerce_type(raw: Any) -> Optional[FieldType]:
    """Map a model-supplied type tag onto FieldType; None if unrecognized."""
    if not isinstance(raw, str):
        return None
    key = raw.strip().lower().replace("_", "-").replace(" ", "-")
    return _TYPE_ALIASES.get(key)


def _option_text(opt: Any) -> Optional[str]:
    if isinstance(opt, dict):
        opt = opt.get("label", opt.get("value", opt.get("text")))
    if opt is None or isinstance(opt, (dict, list)):
        return None
    s = str(opt).strip()
    return s or None


def _coerce_options(raw: Any) -> List[str]:
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        return []
    out: List[str] = []
    seen: Set[str] = set()
    for opt in items:
        text = _option_text(opt)
        if text and text not in seen:
            seen.add(text)
            out.append(text)
    return out


def _coerce_label(raw: Dict[str, Any], position: int) -> str:
    for key in _LABEL_KEYS:
        val = raw.get(key)
        if isinstance(val, (str, int, float)) and not isinstance(val, bool):
            s = str(val).strip()
            if s:
                return s
    return f"Question {position}"


def _unique_id(candidate: str, taken: Set[str]) -> str:
    if candidate not in taken:
        return candidate
    n = 2
    while f"{candidate}-{n}" in taken:
        n += 1
    return f"{candidate}-{n}"


def normalize(raw: Any, notes: Optional[List[str]] = None) -> List[FormField]:
    """Turn parsed model output into a clean, ordered list of FormField.

    Non-object entries are skipped; if none of the entries is an object the
    whole payload is rejected with FieldSchemaError. Unrecognized types are
    coerced to short text (recorded in `notes`), choice fields without
    options receive PLACEHOLDER_OPTIONS, and `required` is True only for a
    literal boolean True.
    """
    if not isinstance(raw, list):
        raise FieldSchemaError(f"expected a JSON array of fields, got {type(raw).__name__}")
    items = [item for item in raw if isinstance(item, dict)]
    if raw and not items:
        raise FieldSchemaError("JSON array contains no field objects")
    if len(items) != len(raw) and notes is not None:
        notes.append(f"dropped {len(raw) - len(items)} non-object entries")

    taken: Set[str] = set()
    fields: List[FormField] = []
    for idx, item in enumerate(items):
        position = idx + 1
        raw_id = item.get("id")
        base_id = str(raw_id).strip() if raw_id is not None and not isinstance(raw_id, (dict, list)) else ""
        field_id = _unique_id(base_id or f"field-{position}", taken)
        taken.add(field_id)

        ftype = coerce_type(item.get("type"))
        if ftype is None:
            ftype = FieldType.SHORT_TEXT
            msg = f"field '{field_id}': unrecognized type {item.get('type')!r} coerced to '{ftype.value}'"
            log.info("normalize: %s", msg)
            if notes is not None:
                notes.append(msg)

        options: List[str] = []
        if ftype.needs_options:
            options = _coerce_options(item.get("options", item.get("choices")))
            if not options:
                options = list(PLACEHOLDER_OPTIONS)
                if notes is not None:
                    notes.append(f"field '{field_id}': no options supplied; added placeholders")

        placeholder = item.get("placeholder")
        if not (ftype.takes_placeholder and isinstance(placeholder, str) and placeholder.strip()):
            placeholder = None

        fields.append(
            FormField(
                id=field_id,
                type=ftype,
                label=_coerce_label(item, position),
                placeholder=placeholder,
                options=options,
                required=item.get("required") is True,
            )
        )
    return fields
