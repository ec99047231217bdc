"""
Prompt templates for the dictation assistants.

These functions construct chat messages for the transcript corrector and the
structured field extractor. The extractor is paired with ``EXTRACTION_TOOL``
so the model answers through a function call instead of free text.
"""

from typing import Any, Dict, List, Sequence

from .clinical_parsing import DepartmentRef, TaskRef


EXTRACTION_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "extract_clinical_data",
        "description": "Extract structured clinical data from a note",
        "parameters": {
            "type": "object",
            "properties": {
                "department_id": {
                    "type": "string",
                    "description": "The ID of the department where the procedure was performed",
                },
                "task_id": {
                    "type": "string",
                    "description": "The ID of the specific quota task/procedure performed",
                },
                "supervisor_name": {
                    "type": "string",
                    "description": "The name of the supervising doctor (with title like Dr.)",
                },
            },
            "required": [],
            "additionalProperties": False,
        },
    },
}


def build_correction_prompt(text: str) -> List[Dict[str, str]]:
    """Build messages asking the model to clean up a dictated note."""

    instructions = (
        "You are a medical and dental dictation corrector. You receive short "
        "voice-to-text transcripts of clinical notes that may contain misheard "
        "words, misspellings, or informal phrasing. Return a corrected version that: "
        "1) fixes misheard medical and dental terms, "
        "2) preserves the original meaning, "
        "3) keeps roughly the same length and level of detail, and "
        "4) does NOT add any new facts that were not implied by the user.\n\n"
        "Return ONLY the corrected note as plain text, with no explanations or "
        "extra formatting."
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": text},
    ]


def build_extraction_prompt(
    text: str,
    departments: Sequence[DepartmentRef],
    tasks: Sequence[TaskRef],
) -> List[Dict[str, str]]:
    """Build messages for structured extraction seeded with reference data.

    Only identifiers listed here are acceptable answers; the caller discards
    anything else the model returns.
    """

    department_lines = "\n".join(f"{d.name} (id: {d.id})" for d in departments) or "(none)"
    task_lines = (
        "\n".join(
            f"{t.task_name} in department {t.department_id} (id: {t.id})" for t in tasks
        )
        or "(none)"
    )
    instructions = (
        "You are a clinical note parser for dental students. Extract structured "
        "data from clinical notes.\n\n"
        f"Available Departments:\n{department_lines}\n\n"
        f"Available Quota Tasks:\n{task_lines}\n\n"
        "Extract the department ID, task ID, and supervisor name from the clinical "
        "note. Be intelligent about matching:\n"
        "- Recognize common dental procedure names (extraction, filling, crown, "
        "root canal, etc.)\n"
        "- Match them to the appropriate quota tasks\n"
        "- Identify supervisor names (usually prefixed with \"Dr.\" or similar titles)\n"
        "- Handle informal language and abbreviations\n"
        "Leave a field out when the note does not mention it."
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": f'Parse this clinical note: "{text}"'},
    ]


__all__ = ["EXTRACTION_TOOL", "build_correction_prompt", "build_extraction_prompt"]
