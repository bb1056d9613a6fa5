"""
JSONL backup files: one memory payload per line.

Blocking file I/O; callers on the event loop run these in an executor.
"""

import json
import logging
import os
from collections.abc import Iterable
from typing import Any

logger = logging.getLogger(__name__)


def write_jsonl(path: str, records: Iterable[dict[str, Any]]) -> int:
    """Write *records* to *path* (replacing it), creating parent directories. Returns the line count."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    count = 0
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False))
            f.write("\n")
            count += 1
    logger.debug(f"Wrote {count} records to {path}")
    return count


def read_jsonl(path: str) -> tuple[list[tuple[int, dict[str, Any]]], list[str]]:
    """
    Parse *path* line by line; blank lines are ignored.

    Returns:
        ``(records, errors)``: ``(line_number, object)`` pairs for every line
        holding a JSON object, and one message per line that does not.
    """
    records: list[tuple[int, dict[str, Any]]] = []
    errors: list[str] = []
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                errors.append(f"line {line_number}: invalid JSON: {e}")
                continue
            if not isinstance(record, dict):
                errors.append(f"line {line_number}: expected an object, got {type(record).__name__}")
                continue
            records.append((line_number, record))
    return records, errors
