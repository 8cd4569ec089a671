from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Set

from jsonschema.validators import Draft202012Validator

from formgen.fields import coerce_type

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "field_schema.json"


@lru_cache(maxsize=1)
def _validator() -> Draft202012Validator:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _schema_errors(fields: Any) -> List[Dict[str, str]]:
    errors: List[Dict[str, str]] = []
    for err in _validator().iter_errors(fields):
        loc = ".".join(str(p) for p in err.absolute_path) or "(root)"
        errors.append({"path": loc, "message": err.message})
    return errors


def collect_errors(fields: Any) -> List[Dict[str, str]]:
    """
    Return a list of {"path": "...", "message": "..."} error dicts for a
    field list as a form builder would save it. Messages say 'required'
    when a required property is missing.
    """
    errors = _schema_errors(fields)
    if not isinstance(fields, list):
        return errors

    # Checks JSON Schema cannot express across items
    seen: Set[str] = set()
    for idx, item in enumerate(fields):
        if not isinstance(item, dict):
            continue
        fid = item.get("id")
        if isinstance(fid, str) and fid:
            if fid in seen:
                errors.append({"path": f"{idx}.id", "message": f"duplicate field id '{fid}'"})
            seen.add(fid)
        ftype = coerce_type(item.get("type"))
        options = item.get("options")
        if ftype is not None and ftype.needs_options and isinstance(options, list):
            texts = [o.strip() for o in options if isinstance(o, str)]
            if any(not t for t in texts):
                errors.append({"path": f"{idx}.options", "message": "options must not be blank"})
    return errors

