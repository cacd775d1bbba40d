"""Load batch rows (one dict per render) from CSV, TSV, JSON or YAML files."""
from __future__ import annotations

import csv
import io
import json
import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

from logging_utils import get_logger
from render_pipeline.errors import ValidationError

logger = get_logger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".tsv", ".json", ".yaml", ".yml")

# Numbers only when there is no leading zero ("007" stays a string).
_NUMBER = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?$")


def auto_convert(value: str) -> Any:
    """Turn CSV text into bool/int/float where it unambiguously is one."""
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER.match(value):
        if "." in value:
            return float(value)
        return int(value)
    return value


def parse_delimited(content: str, delimiter: str = ",") -> List[Dict[str, Any]]:
    reader = csv.reader(io.StringIO(content, newline=""), delimiter=delimiter)
    records = [row for row in reader if any(cell.strip() for cell in row)]
    if len(records) < 2:
        raise ValidationError("CSV must have a header row and at least one data row")
    headers = [h.strip() for h in records[0]]
    rows: List[Dict[str, Any]] = []
    for record in records[1:]:
        row: Dict[str, Any] = {}
        for idx, key in enumerate(headers):
            cell = record[idx].strip() if idx < len(record) else ""
            row[key] = auto_convert(cell)
        rows.append(row)
    return rows


def _check_objects(parsed: Any, kind: str) -> List[Dict[str, Any]]:
    if not isinstance(parsed, list):
        raise ValidationError(
            f"{kind} data file must contain a top-level array, got {type(parsed).__name__}"
        )
    for i, item in enumerate(parsed):
        if not isinstance(item, dict):
            raise ValidationError(
                f"Each item in {kind} data must be an object (row {i} is {type(item).__name__})"
            )
    return parsed


def parse_json(content: str, source: str = "<string>") -> List[Dict[str, Any]]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON in data file {source}: {exc}") from exc
    return _check_objects(parsed, "JSON")


def parse_yaml(content: str, source: str = "<string>") -> List[Dict[str, Any]]:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in data file {source}: {exc}") from exc
    return _check_objects(parsed, "YAML")


def load_data_file(path: Path | str) -> List[Dict[str, Any]]:
    """Read a data file into a list of row dicts.

    Raises ``FileNotFoundError`` for a missing file and ``ValidationError``
    for an empty file, an unsupported suffix or a malformed payload.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    content = file_path.read_text(encoding="utf-8-sig").strip()
    if not content:
        raise ValidationError(f"Data file is empty: {path}")

    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        rows = parse_delimited(content, ",")
    elif suffix == ".tsv":
        rows = parse_delimited(content, "\t")
    elif suffix == ".json":
        rows = parse_json(content, str(path))
    elif suffix in (".yaml", ".yml"):
        rows = parse_yaml(content, str(path))
    else:
        raise ValidationError(
            f'Unsupported data file format "{suffix}". Use {", ".join(SUPPORTED_SUFFIXES)}'
        )

    if not rows:
        raise ValidationError(f"Data file contains no rows: {path}")
    logger.debug("Loaded %d row(s) from %s", len(rows), file_path)
    return rows
