"""Parsers for virsh's two kinds of text output."""

from __future__ import annotations

import re
from typing import Dict, List

# Columns are separated by two or more spaces. Values that sit closer than
# that to their neighbour cannot be told apart and are read as one field.
_COLUMN_GAP = re.compile(r"\s{2,}")


def parse_table(text: str) -> List[Dict[str, str]]:
    """Parse columnar output: header row, separator row, data rows.

    Missing trailing cells come back as empty strings; surplus cells are
    dropped.
    """
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return []
    header = [cell.strip() for cell in _COLUMN_GAP.split(lines[0].strip())]
    rows: List[Dict[str, str]] = []
    for line in lines[2:]:
        values = [cell.strip() for cell in _COLUMN_GAP.split(line.strip())]
        rows.append({key: values[idx] if idx < len(values) else "" for idx, key in enumerate(header)})
    return rows


def parse_key_values(text: str, separators: str = ":=") -> Dict[str, str]:
    """Parse ``key: value`` / ``key=value`` lines into a flat mapping.

    Each line is split on the first separator character it contains; lines
    with none are ignored. Later duplicate keys win.
    """
    pattern = re.compile("[" + re.escape(separators) + "]")
    result: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = pattern.split(line, maxsplit=1)
        if len(parts) != 2:
            continue
        key, value = parts[0].strip(), parts[1].strip()
        if key:
            result[key] = value
    return result
