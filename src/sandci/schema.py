# schema.py
# Pipeline documents (YAML / JSON) <-> validated Pipeline models.
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Mapping, Union

import emoji
import yaml
from pydantic import ValidationError

from .errors import SchemaError
from .model import Pipeline

DECODERS = {
    ".yml": "yaml",
    ".yaml": "yaml",
    ".json": "json",
}


def format_for(path: Union[str, Path]) -> str:
    suffix = Path(path).suffix.lower()
    fmt = DECODERS.get(suffix)
    if fmt is None:
        raise SchemaError(
            [f"unsupported pipeline file extension {suffix or '(none)'!r}; expected one of {sorted(DECODERS)}"],
            source=str(path),
        )
    return fmt


def normalize_text(text: str) -> str:
    """`:rocket:` style shortcodes -> emoji. Presentation only."""
    return emoji.emojize(text, language="alias")


def _decode(text: str, fmt: str, source: str) -> Any:
    try:
        if fmt == "yaml":
            return yaml.safe_load(text)
        if fmt == "json":
            return json.loads(text)
    except yaml.YAMLError as e:
        raise SchemaError([f"invalid YAML: {e}"], source=source) from e
    except json.JSONDecodeError as e:
        raise SchemaError([f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"], source=source) from e
    raise SchemaError([f"unknown document format {fmt!r}"], source=source)


def _location(loc: tuple) -> str:
    parts: List[str] = []
    for p in loc:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            # Tagged-union branches show up as location segments; keep them
            # but they read better as `steps[0].command.key` than `steps.0.command.key`.
            parts.append(f".{p}" if parts else str(p))
    return "".join(parts) or "(root)"


def violations_from(err: ValidationError) -> List[str]:
    out: List[str] = []
    for e in err.errors():
        msg = e["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        out.append(f"{_location(e['loc'])}: {msg}")
    return out


def validate_pipeline(document: Any, source: str = "<memory>") -> Pipeline:
    if document is None:
        raise SchemaError(["pipeline document is empty"], source=source)
    if not isinstance(document, Mapping):
        raise SchemaError([f"pipeline must be a mapping, got {type(document).__name__}"], source=source)
    try:
        return Pipeline.model_validate(dict(document))
    except ValidationError as e:
        raise SchemaError(violations_from(e), source=source) from None


def parse_pipeline_text(text: str, fmt: str = "yaml", source: str = "<memory>") -> Pipeline:
    document = _decode(normalize_text(text), fmt, source)
    return validate_pipeline(document, source=source)


def parse_pipeline_file(path: Union[str, Path]) -> Pipeline:
    p = Path(path)
    fmt = format_for(p)
    if not p.is_file():
        raise SchemaError([f"pipeline file not found: {p}"], source=str(p))
    return parse_pipeline_text(p.read_text(encoding="utf-8"), fmt, source=str(p))


def dump_pipeline(pipeline: Pipeline, fmt: str = "yaml") -> str:
    document = pipeline.to_document()
    if fmt == "yaml":
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
    if fmt == "json":
        return json.dumps(document, indent=2, ensure_ascii=False) + "\n"
    raise ValueError(f"unknown format {fmt!r} (expected 'yaml' or 'json')")
