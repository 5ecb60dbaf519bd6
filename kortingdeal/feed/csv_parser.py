"""
Hand-rolled CSV reader for the Awin product feed.

Fields are split on commas with RFC4180 style quoting: a double quote toggles
quote mode, two double quotes inside quotes are a literal quote, and commas
inside quotes do not split. Records never span lines.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

RawFeedRow = Dict[str, str]


@dataclass
class ParseStats:
    """Line accounting for one parse; ``malformed`` is the field-count mismatch gap."""
    data_lines: int = 0
    parsed: int = 0
    malformed: int = 0


def parse_csv_line(line: str) -> List[str]:
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if char == '"':
            if in_quotes and i + 1 < length and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    fields.append("".join(current).strip())
    return fields


def split_lines(text: str) -> List[str]:
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def find_header(lines: Sequence[str]) -> tuple[int, List[str]] | None:
    """Return ``(index, fields)`` of the first non-empty line, or None."""
    for idx, line in enumerate(lines):
        if line.strip():
            return idx, parse_csv_line(line)
    return None


def parse_csv_window(
    lines: Sequence[str],
    header: List[str],
    start: int,
    end: int,
    stats: Optional[ParseStats] = None,
) -> List[RawFeedRow]:
    """Parse ``lines[start:end]`` against ``header``; mismatching lines are dropped."""
    rows: List[RawFeedRow] = []
    width = len(header)
    for idx in range(max(start, 0), min(end, len(lines))):
        line = lines[idx]
        if not line.strip():
            continue
        if stats is not None:
            stats.data_lines += 1
        values = parse_csv_line(line)
        if len(values) != width:
            if stats is not None:
                stats.malformed += 1
            continue
        rows.append(dict(zip(header, values)))
    if stats is not None:
        stats.parsed += len(rows)
    return rows


def parse_csv(text: str, max_rows: Optional[int] = None, stats: Optional[ParseStats] = None) -> List[RawFeedRow]:
    """
    Parse a whole feed into row mappings keyed by the header fields.

    ``max_rows`` bounds the number of rows produced; lines past the bound are
    not split at all. Header-only or empty input yields an empty list.
    """
    lines = split_lines(text)
    if len(lines) < 2:
        return []

    found = find_header(lines)
    if found is None:
        return []
    header_idx, header = found

    stats = stats if stats is not None else ParseStats()
    rows: List[RawFeedRow] = []
    width = len(header)
    for line in lines[header_idx + 1:]:
        if max_rows is not None and len(rows) >= max_rows:
            break
        if not line.strip():
            continue
        stats.data_lines += 1
        values = parse_csv_line(line)
        if len(values) != width:
            stats.malformed += 1
            continue
        rows.append(dict(zip(header, values)))

    stats.parsed = len(rows)
    if stats.malformed:
        logger.info(f"[FEED] Dropped {stats.malformed} malformed lines out of {stats.data_lines}")
    return rows
