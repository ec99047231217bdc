"""Deterministic keyword extraction for dictated clinical notes.

The matcher is the local fallback used whenever the remote extraction call
fails or returns nothing usable. It resolves a department, a task scoped to
that department and a supervisor name using fixed English keyword tables.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepartmentRef:
    id: str
    name: str


@dataclass(frozen=True)
class TaskRef:
    id: str
    task_name: str
    department_id: str


@dataclass(frozen=True)
class ExtractedFields:
    """Fields recovered from a note; any of them may be missing."""

    department: Optional[str] = None
    task: Optional[str] = None
    supervisor_name: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.department or self.task or self.supervisor_name)

    def as_payload(self) -> dict:
        return {
            "department": self.department,
            "task": self.task,
            "supervisorName": self.supervisor_name,
        }


# Text keyword -> substring of the department name it points at.
_DEPARTMENT_KEYWORDS: Sequence[Tuple[str, str]] = (
    ("surgery", "surgery"),
    ("radiology", "radiology"),
    ("perio", "perio"),
    ("pediatric", "pediatric"),
    ("endo", "endo"),
    ("prostho", "prostho"),
    ("ortho", "ortho"),
    ("public health", "public"),
)

# Text keyword -> substrings of the task name, any of which matches.
_TASK_KEYWORDS: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("extraction", ("exo",)),
    ("filling", ("restor",)),
    ("root canal", ("rct",)),
    ("crown", ("crown", "fpd")),
    ("scaling", ("scal",)),
    ("x-ray", ("radiograph",)),
)

# Prefix is case-insensitive; names must be capitalized.
_SUPERVISOR_RE = re.compile(r"\b(?i:dr)\.?\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)")


def match_department(text: str, departments: Iterable[DepartmentRef]) -> Optional[str]:
    """Return the id of the first department named or implied by *text*."""

    lowered = text.lower()
    for department in departments:
        name = department.name.lower()
        if name and name in lowered:
            return department.id
        for keyword, fragment in _DEPARTMENT_KEYWORDS:
            if keyword in lowered and fragment in name:
                return department.id
    return None


def match_task(
    text: str, department_id: Optional[str], tasks: Iterable[TaskRef]
) -> Optional[str]:
    """Return the first task of *department_id* named or implied by *text*."""

    if not department_id:
        return None
    lowered = text.lower()
    for task in tasks:
        if task.department_id != department_id:
            continue
        name = task.task_name.lower()
        if name and name in lowered:
            return task.id
        for keyword, fragments in _TASK_KEYWORDS:
            if keyword in lowered and any(fragment in name for fragment in fragments):
                return task.id
    return None


def match_supervisor(text: str) -> Optional[str]:
    """Return ``"Dr. <Name>"`` for the first doctor mentioned in *text*."""

    match = _SUPERVISOR_RE.search(text)
    if not match:
        return None
    return f"Dr. {match.group(1)}"


def parse_clinical_note(
    text: str,
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
) -> ExtractedFields:
    """Extract department, task and supervisor from *text* using keyword tables."""

    if not text or not text.strip():
        return ExtractedFields()
    department = match_department(text, departments)
    task = match_task(text, department, tasks)
    supervisor = match_supervisor(text)
    logger.debug(
        "keyword extraction department=%s task=%s supervisor=%s",
        department,
        task,
        bool(supervisor),
    )
    return ExtractedFields(department=department, task=task, supervisor_name=supervisor)


def department_refs(rows: Iterable[object]) -> List[DepartmentRef]:
    """Build :class:`DepartmentRef` values from ORM rows or mappings."""

    return [DepartmentRef(id=str(_field(r, "id")), name=str(_field(r, "name"))) for r in rows]


def task_refs(rows: Iterable[object]) -> List[TaskRef]:
    """Build :class:`TaskRef` values from ORM rows or mappings."""

    return [
        TaskRef(
            id=str(_field(r, "id")),
            task_name=str(_field(r, "task_name")),
            department_id=str(_field(r, "department_id")),
        )
        for r in rows
    ]


def _field(row: object, name: str) -> object:
    if isinstance(row, Mapping):
        return row.get(name, "")
    return getattr(row, name, "")


__all__ = [
    "DepartmentRef",
    "TaskRef",
    "ExtractedFields",
    "match_department",
    "match_task",
    "match_supervisor",
    "parse_clinical_note",
    "department_refs",
    "task_refs",
]
