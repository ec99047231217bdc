"""Parsing of pasted student rosters (spreadsheet copy or CSV text)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Sequence

logger = logging.getLogger(__name__)

DEFAULT_NAME = "Student"
DEFAULT_BATCH = "Batch A"

_HEADER_KEYWORDS: Sequence[str] = ("email", "e-mail", "mail", "name", "batch")
_LINE_SPLIT = re.compile(r"\r?\n")


@dataclass(frozen=True)
class RosterRow:
    email: str
    name: str
    batch: str


def _detect_delimiter(first_line: str) -> str:
    return "\t" if "\t" in first_line else ","


def _looks_like_header(columns: Sequence[str]) -> bool:
    lowered = [c.lower() for c in columns]
    if any("@" in c for c in lowered):
        return False
    return any(key in c for c in lowered for key in _HEADER_KEYWORDS)


def _row_from_columns(columns: Sequence[str]) -> RosterRow | None:
    email_index = next((i for i, c in enumerate(columns) if "@" in c), None)
    if email_index is None:
        return None
    rest = [c for i, c in enumerate(columns) if i != email_index]
    name = rest[0] if len(rest) > 0 and rest[0] else DEFAULT_NAME
    batch = rest[1] if len(rest) > 1 and rest[1] else DEFAULT_BATCH
    return RosterRow(email=columns[email_index], name=name, batch=batch)


@dataclass(frozen=True)
class RosterParse:
    rows: List[RosterRow]
    skipped_lines: int


def read_roster(text: str) -> RosterParse:
    """Parse newline-delimited roster text into rows.

    The delimiter is a tab when the first line contains one, otherwise a
    comma. A first line with header keywords and no email is skipped. Rows
    without any ``@`` column are dropped. ``skipped_lines`` counts the
    non-blank lines that produced no row, header included.
    """

    lines = [line.strip() for line in _LINE_SPLIT.split(text or "")]
    lines = [line for line in lines if line]
    if not lines:
        return RosterParse(rows=[], skipped_lines=0)

    delimiter = _detect_delimiter(lines[0])
    split_lines = [[part.strip() for part in line.split(delimiter)][:3] for line in lines]
    if _looks_like_header(split_lines[0]):
        split_lines = split_lines[1:]

    rows: List[RosterRow] = []
    for index, columns in enumerate(split_lines, start=1):
        row = _row_from_columns(columns)
        if row is None:
            logger.debug("roster line %d skipped: no email column", index)
            continue
        rows.append(row)
    return RosterParse(rows=rows, skipped_lines=len(lines) - len(rows))


def parse_roster(text: str) -> List[RosterRow]:
    """Return only the rows of :func:`read_roster`."""

    return read_roster(text).rows


__all__ = ["DEFAULT_BATCH", "DEFAULT_NAME", "RosterParse", "RosterRow", "parse_roster", "read_roster"]
