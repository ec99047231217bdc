import pytest

from logbook import note_pipeline
from logbook.clinical_parsing import DepartmentRef, TaskRef
from logbook.note_pipeline import (
    SOURCE_AI,
    SOURCE_KEYWORDS,
    SOURCE_MIXED,
    SOURCE_NONE,
    extract_fields,
    normalize_transcript,
    run_pipeline,
    validate_remote_fields,
)

DEPARTMENTS = [
    DepartmentRef("d-surg", "Oral Maxillofacial Surgery"),
    DepartmentRef("d-endo", "Endodontics"),
]
TASKS = [
    TaskRef("t-simple", "Simple Exo", "d-surg"),
    TaskRef("t-rct", "RCT Posterior", "d-endo"),
]


def _fail(*args, **kwargs):
    raise RuntimeError("network down")


def test_normalize_uses_corrected_text(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai", lambda msgs: "  Extraction of 36  ")
    result = normalize_transcript("extrakshun of 36")
    assert result.text == "Extraction of 36"
    assert result.corrected is True


def test_normalize_passes_through_on_failure(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai", _fail)
    result = normalize_transcript("raw note")
    assert result.text == "raw note"
    assert result.corrected is False


def test_normalize_passes_through_on_blank_response(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai", lambda msgs: "   ")
    assert normalize_transcript("raw note").text == "raw note"


def test_normalize_skips_remote_for_empty_or_disabled(monkeypatch):
    calls = []
    monkeypatch.setattr(note_pipeline, "call_openai", lambda msgs: calls.append(msgs) or "x")
    assert normalize_transcript("").text == ""
    assert normalize_transcript("keep me", enabled=False).text == "keep me"
    assert calls == []


def test_normalize_prompt_carries_the_note(monkeypatch):
    seen = {}

    def fake_call(msgs):
        seen["msgs"] = msgs
        return "ok"

    monkeypatch.setattr(note_pipeline, "call_openai", fake_call)
    normalize_transcript("root canal on 46")
    assert seen["msgs"][0]["role"] == "system"
    assert "does NOT add any new facts" in seen["msgs"][0]["content"]
    assert seen["msgs"][1]["content"] == "root canal on 46"


def test_validate_remote_fields_drops_unknown_ids():
    fields = validate_remote_fields(
        {"department_id": "nope", "task_id": "also-nope", "supervisor_name": " Dr. Who "},
        DEPARTMENTS,
        TASKS,
    )
    assert fields.department is None
    assert fields.task is None
    assert fields.supervisor_name == "Dr. Who"


def test_validate_remote_fields_infers_department_from_task():
    fields = validate_remote_fields({"task_id": "t-rct"}, DEPARTMENTS, TASKS)
    assert fields.department == "d-endo"
    assert fields.task == "t-rct"


def test_validate_remote_fields_drops_task_from_other_department():
    fields = validate_remote_fields(
        {"department_id": "d-surg", "task_id": "t-rct"}, DEPARTMENTS, TASKS
    )
    assert fields.department == "d-surg"
    assert fields.task is None


def test_extract_prefers_remote_result(monkeypatch):
    monkeypatch.setattr(
        note_pipeline,
        "call_openai_tool",
        lambda msgs, tool: {
            "department_id": "d-endo",
            "task_id": "t-rct",
            "supervisor_name": "Dr. Rao",
        },
    )
    extraction = extract_fields("rct with dr rao", DEPARTMENTS, TASKS)
    assert extraction.source == SOURCE_AI
    assert extraction.fields.department == "d-endo"
    assert extraction.fields.supervisor_name == "Dr. Rao"


def test_extract_falls_back_to_keywords_on_failure(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai_tool", _fail)
    extraction = extract_fields("Extraction in surgery with Dr. Smith", DEPARTMENTS, TASKS)
    assert extraction.source == SOURCE_KEYWORDS
    assert extraction.fields.department == "d-surg"
    assert extraction.fields.task == "t-simple"
    assert extraction.fields.supervisor_name == "Dr. Smith"


def test_extract_falls_back_when_remote_returns_nothing(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai_tool", lambda msgs, tool: {})
    extraction = extract_fields("seen by Dr. Smith", DEPARTMENTS, TASKS)
    assert extraction.source == SOURCE_KEYWORDS
    assert extraction.fields.supervisor_name == "Dr. Smith"
    assert extraction.fields.task is None


def test_extract_fills_missing_fields_from_keywords(monkeypatch):
    monkeypatch.setattr(
        note_pipeline, "call_openai_tool", lambda msgs, tool: {"department_id": "d-surg"}
    )
    extraction = extract_fields("extraction with Dr. Smith", DEPARTMENTS, TASKS)
    assert extraction.source == SOURCE_MIXED
    assert extraction.fields.task == "t-simple"
    assert extraction.fields.supervisor_name == "Dr. Smith"


def test_extract_empty_text_makes_no_remote_call(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai_tool", _fail)
    extraction = extract_fields("  ", DEPARTMENTS, TASKS)
    assert extraction.source == SOURCE_NONE
    assert extraction.fields.is_empty()


def test_extract_without_remote_never_calls_model(monkeypatch):
    monkeypatch.setattr(note_pipeline, "call_openai_tool", _fail)
    extraction = extract_fields("nothing useful", DEPARTMENTS, TASKS, use_remote=False)
    assert extraction.source == SOURCE_NONE


@pytest.mark.parametrize("fail_correction", [True, False])
def test_run_pipeline_extracts_from_normalized_text(monkeypatch, fail_correction):
    if fail_correction:
        monkeypatch.setattr(note_pipeline, "call_openai", _fail)
    else:
        monkeypatch.setattr(
            note_pipeline, "call_openai", lambda msgs: "Extraction in surgery with Dr. Smith"
        )
    monkeypatch.setattr(note_pipeline, "call_openai_tool", _fail)
    result = run_pipeline("Extraction in surgery with Dr. Smith", DEPARTMENTS, TASKS)
    assert result.corrected is (not fail_correction)
    assert result.fields.task == "t-simple"
    payload = result.as_payload()
    assert payload["supervisorName"] == "Dr. Smith"
    assert payload["originalText"] == "Extraction in surgery with Dr. Smith"
