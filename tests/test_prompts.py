from logbook import prompts
from logbook.clinical_parsing import DepartmentRef, TaskRef


def test_correction_prompt_forbids_new_facts():
    messages = prompts.build_correction_prompt("rute canal with doctor smith")
    assert messages[0]["role"] == "system"
    assert "does NOT add any new facts" in messages[0]["content"]
    assert messages[1] == {"role": "user", "content": "rute canal with doctor smith"}


def test_extraction_prompt_lists_reference_ids():
    departments = [DepartmentRef(id="d1", name="Endodontics")]
    tasks = [TaskRef(id="t1", task_name="RCT Anterior", department_id="d1")]
    messages = prompts.build_extraction_prompt("rct", departments, tasks)
    system = messages[0]["content"]
    assert "Endodontics (id: d1)" in system
    assert "RCT Anterior in department d1 (id: t1)" in system
    assert messages[1]["content"] == 'Parse this clinical note: "rct"'


def test_extraction_prompt_without_reference_data():
    system = prompts.build_extraction_prompt("note", [], [])[0]["content"]
    assert system.count("(none)") == 2


def test_extraction_tool_fields_are_optional():
    function = prompts.EXTRACTION_TOOL["function"]
    assert function["name"] == "extract_clinical_data"
    assert function["parameters"]["required"] == []
    assert set(function["parameters"]["properties"]) == {"department_id", "task_id", "supervisor_name"}
