"""Add-case form state with manual-override tracking.

Automated extraction may only fill a field while the user has not touched
it. The three flags flip to ``True`` on direct edits and return to ``False``
only through :meth:`ProcedureForm.reset`, which runs after a successful
submission.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from logbook.clinical_parsing import ExtractedFields, TaskRef


class FormValidationError(ValueError):
    """Raised when a form is submitted with missing or inconsistent fields."""

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors = dict(errors)
        super().__init__("; ".join(f"{k}: {v}" for k, v in self.errors.items()))


@dataclass
class ManualFlags:
    department: bool = False
    task: bool = False
    supervisor: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return {
            "department": self.department,
            "task": self.task,
            "supervisor": self.supervisor,
        }


@dataclass
class ProcedureForm:
    department_id: Optional[str] = None
    task_id: Optional[str] = None
    supervisor_name: str = ""
    procedure_date: Optional[date] = None
    patient_name: Optional[str] = None
    patient_op_number: Optional[str] = None
    manual: ManualFlags = field(default_factory=ManualFlags)

    # -- direct user edits -------------------------------------------------
    def select_department(self, department_id: Optional[str]) -> None:
        """Manual department choice; tasks are department scoped so the task resets."""

        self.department_id = department_id or None
        self.task_id = None
        self.manual.department = True
        self.manual.task = True

    def select_task(self, task_id: Optional[str]) -> None:
        self.task_id = task_id or None
        self.manual.task = True

    def enter_supervisor(self, name: Optional[str]) -> None:
        self.supervisor_name = name or ""
        self.manual.supervisor = True

    def apply_edits(self, edits: Mapping[str, Any]) -> None:
        """Apply a partial set of user edits keyed by field name."""

        if "department_id" in edits:
            self.select_department(edits["department_id"])
        if "task_id" in edits:
            self.select_task(edits["task_id"])
        if "supervisor_name" in edits:
            self.enter_supervisor(edits["supervisor_name"])
        if "procedure_date" in edits:
            self.procedure_date = edits["procedure_date"]
        if "patient_name" in edits:
            self.patient_name = edits["patient_name"] or None
        if "patient_op_number" in edits:
            self.patient_op_number = edits["patient_op_number"] or None

    # -- automated fill ----------------------------------------------------
    def apply_extraction(
        self,
        fields: ExtractedFields,
        tasks: Optional[Mapping[str, TaskRef]] = None,
    ) -> List[str]:
        """Write extracted values into untouched fields; return the names written."""

        applied: List[str] = []
        if fields.department and not self.manual.department:
            if fields.department != self.department_id:
                self.department_id = fields.department
                if not self.manual.task:
                    self.task_id = None
            applied.append("department")
        if fields.task and not self.manual.task and self._task_fits(fields.task, tasks):
            self.task_id = fields.task
            applied.append("task")
        if fields.supervisor_name and not self.manual.supervisor:
            self.supervisor_name = fields.supervisor_name
            applied.append("supervisor")
        return applied

    def _task_fits(self, task_id: str, tasks: Optional[Mapping[str, TaskRef]]) -> bool:
        if tasks is None:
            return True
        task = tasks.get(task_id)
        return task is not None and task.department_id == self.department_id

    # -- submission --------------------------------------------------------
    def validate(self, tasks: Mapping[str, TaskRef]) -> None:
        errors: Dict[str, str] = {}
        if not self.department_id:
            errors["department_id"] = "Select a department"
        if not self.task_id:
            errors["task_id"] = "Select a task"
        elif self.task_id not in tasks:
            errors["task_id"] = "Unknown task"
        elif self.department_id and tasks[self.task_id].department_id != self.department_id:
            errors["task_id"] = "Task does not belong to the selected department"
        if self.procedure_date is None:
            errors["procedure_date"] = "Pick a date"
        if not self.supervisor_name.strip():
            errors["supervisor_name"] = "Supervisor name is required"
        if errors:
            raise FormValidationError(errors)

    def reset(self) -> None:
        self.department_id = None
        self.task_id = None
        self.supervisor_name = ""
        self.procedure_date = None
        self.patient_name = None
        self.patient_op_number = None
        self.manual = ManualFlags()

    # -- persistence -------------------------------------------------------
    def values(self) -> Dict[str, Any]:
        return {
            "department_id": self.department_id,
            "task_id": self.task_id,
            "supervisor_name": self.supervisor_name,
            "procedure_date": self.procedure_date.isoformat() if self.procedure_date else None,
            "patient_name": self.patient_name,
            "patient_op_number": self.patient_op_number,
        }

    def as_payload(self) -> Dict[str, Any]:
        return {"values": self.values(), "manual": self.manual.as_dict()}

    @classmethod
    def from_values(
        cls, values: Optional[Mapping[str, Any]], manual: Optional[ManualFlags] = None
    ) -> "ProcedureForm":
        values = values or {}
        raw_date = values.get("procedure_date")
        return cls(
            department_id=values.get("department_id"),
            task_id=values.get("task_id"),
            supervisor_name=values.get("supervisor_name") or "",
            procedure_date=date.fromisoformat(raw_date) if raw_date else None,
            patient_name=values.get("patient_name"),
            patient_op_number=values.get("patient_op_number"),
            manual=manual or ManualFlags(),
        )


__all__ = ["FormValidationError", "ManualFlags", "ProcedureForm"]
