"""Dictated note pipeline: correct, extract, fall back.

``run_pipeline`` takes a raw utterance through two sequential remote calls.
Neither call is retried; any failure drops straight to the documented
fallback (pass-through for correction, keyword matching for extraction) and
is only visible in logs and metrics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import structlog

from logbook.clinical_parsing import (
    DepartmentRef,
    ExtractedFields,
    TaskRef,
    match_department,
    match_supervisor,
    match_task,
    parse_clinical_note,
)
from logbook.observability import record_ai_call, record_fallback
from logbook.openai_client import call_openai, call_openai_tool
from logbook.prompts import EXTRACTION_TOOL, build_correction_prompt, build_extraction_prompt

logger = structlog.get_logger(__name__)

SOURCE_AI = "ai"
SOURCE_KEYWORDS = "keywords"
SOURCE_MIXED = "mixed"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class NormalizedText:
    text: str
    corrected: bool


@dataclass(frozen=True)
class Extraction:
    fields: ExtractedFields
    source: str


@dataclass(frozen=True)
class PipelineResult:
    original_text: str
    text: str
    corrected: bool
    fields: ExtractedFields
    source: str

    def as_payload(self) -> Dict[str, Any]:
        return {
            "originalText": self.original_text,
            "text": self.text,
            "corrected": self.corrected,
            "source": self.source,
            **self.fields.as_payload(),
        }


def normalize_transcript(text: str, *, enabled: bool = True) -> NormalizedText:
    """Return the corrected transcript, or *text* unchanged on any failure."""

    original = text or ""
    if not enabled or not original.strip():
        return NormalizedText(text=original, corrected=False)
    try:
        corrected = call_openai(build_correction_prompt(original))
    except Exception as exc:
        record_ai_call("correct", "error")
        record_fallback("correct", "error")
        logger.warning("note_correction_failed", error=str(exc))
        return NormalizedText(text=original, corrected=False)
    record_ai_call("correct", "ok")
    if not corrected or not corrected.strip():
        record_fallback("correct", "empty")
        logger.info("note_correction_empty")
        return NormalizedText(text=original, corrected=False)
    return NormalizedText(text=corrected.strip(), corrected=True)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def validate_remote_fields(
    arguments: Mapping[str, Any],
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
) -> ExtractedFields:
    """Keep only identifiers that exist in the caller's reference data."""

    department_ids = {d.id for d in departments}
    tasks_by_id = {t.id: t for t in tasks}

    department = _clean(arguments.get("department_id") or arguments.get("department"))
    if department not in department_ids:
        department = None

    task = _clean(arguments.get("task_id") or arguments.get("task"))
    task_ref = tasks_by_id.get(task) if task else None
    if task_ref is None:
        task = None
    elif department is None:
        department = task_ref.department_id if task_ref.department_id in department_ids else None
        if department is None:
            task = None
    elif task_ref.department_id != department:
        task = None

    supervisor = _clean(arguments.get("supervisor_name") or arguments.get("supervisorName"))
    return ExtractedFields(department=department, task=task, supervisor_name=supervisor)


def _fill_missing(
    text: str,
    remote: ExtractedFields,
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
) -> Extraction:
    department = remote.department or match_department(text, departments)
    task = remote.task or match_task(text, department, tasks)
    supervisor = remote.supervisor_name or match_supervisor(text)
    merged = ExtractedFields(department=department, task=task, supervisor_name=supervisor)
    source = SOURCE_AI if merged == remote else SOURCE_MIXED
    return Extraction(fields=merged, source=source)


def _keyword_extraction(
    text: str, departments: Sequence[DepartmentRef], tasks: Sequence[TaskRef]
) -> Extraction:
    fields = parse_clinical_note(text, departments, tasks)
    return Extraction(fields=fields, source=SOURCE_NONE if fields.is_empty() else SOURCE_KEYWORDS)


def extract_fields(
    text: str,
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
    *,
    use_remote: bool = True,
) -> Extraction:
    """Extract department, task and supervisor, preferring the remote model."""

    if not text or not text.strip():
        return Extraction(fields=ExtractedFields(), source=SOURCE_NONE)
    if not use_remote:
        return _keyword_extraction(text, departments, tasks)

    try:
        arguments = call_openai_tool(
            build_extraction_prompt(text, departments, tasks), EXTRACTION_TOOL
        )
    except Exception as exc:
        record_ai_call("extract", "error")
        record_fallback("extract", "error")
        logger.warning("note_extraction_failed", error=str(exc))
        return _keyword_extraction(text, departments, tasks)

    record_ai_call("extract", "ok")
    remote = validate_remote_fields(arguments, departments, tasks)
    if remote.is_empty():
        record_fallback("extract", "empty")
        logger.info("note_extraction_empty", returned_keys=sorted(arguments))
        return _keyword_extraction(text, departments, tasks)
    return _fill_missing(text, remote, departments, tasks)


def run_pipeline(
    text: str,
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
    *,
    correct: bool = True,
    use_remote: bool = True,
) -> PipelineResult:
    """Normalize *text* (when *correct*) and extract structured fields."""

    normalized = normalize_transcript(text, enabled=correct and use_remote)
    extraction = extract_fields(normalized.text, departments, tasks, use_remote=use_remote)
    logger.info(
        "note_pipeline_complete",
        corrected=normalized.corrected,
        source=extraction.source,
        department=bool(extraction.fields.department),
        task=bool(extraction.fields.task),
        supervisor=bool(extraction.fields.supervisor_name),
    )
    return PipelineResult(
        original_text=text or "",
        text=normalized.text,
        corrected=normalized.corrected,
        fields=extraction.fields,
        source=extraction.source,
    )


__all__ = [
    "NormalizedText",
    "Extraction",
    "PipelineResult",
    "normalize_transcript",
    "validate_remote_fields",
    "extract_fields",
    "run_pipeline",
]
