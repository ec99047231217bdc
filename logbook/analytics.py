"""Quota progress, pace forecasting and cohort comparison."""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logbook.db.models import Batch, Department, Procedure, ProcedureStatus, QuotaTask, UserBatch
from logbook.time_utils import utc_today

VERIFIED = ProcedureStatus.VERIFIED.value
VELOCITY_WINDOW_DAYS = 28


@dataclass(frozen=True)
class DepartmentPace:
    department_id: str
    name: str
    total_target: int
    completed: int
    remaining: int
    required_velocity: float
    current_velocity: float
    on_track: bool
    percent_complete: float

    def as_payload(self) -> Dict[str, Any]:
        return {
            "departmentId": self.department_id,
            "name": self.name,
            "totalTarget": self.total_target,
            "completed": self.completed,
            "remaining": self.remaining,
            "requiredVelocity": round(self.required_velocity, 2),
            "currentVelocity": round(self.current_velocity, 2),
            "onTrack": self.on_track,
            "percentComplete": round(self.percent_complete, 1),
        }


def weeks_remaining(today: date) -> int:
    """Whole weeks left until 31 December, never less than one."""

    end_of_year = date(today.year, 12, 31)
    days = (end_of_year - today).days
    return max(1, math.ceil(days / 7))


def pace_by_department(
    departments: Sequence[Department],
    tasks: Sequence[QuotaTask],
    procedures: Iterable[Procedure],
    today: date,
) -> List[DepartmentPace]:
    """Compare the recent logging rate with the rate needed to finish on time.

    Only verified procedures count and departments without a target are left
    out.
    """

    weeks = weeks_remaining(today)
    window_start = today - timedelta(days=VELOCITY_WINDOW_DAYS)
    targets: Dict[str, int] = defaultdict(int)
    for task in tasks:
        targets[task.department_id] += task.target or 0
    completed: Counter = Counter()
    recent: Counter = Counter()
    for proc in procedures:
        if proc.status != VERIFIED or not proc.department_id:
            continue
        completed[proc.department_id] += 1
        if proc.procedure_date >= window_start:
            recent[proc.department_id] += 1

    results: List[DepartmentPace] = []
    for dept in departments:
        total_target = targets.get(dept.id, 0)
        if total_target <= 0:
            continue
        done = completed[dept.id]
        remaining = max(0, total_target - done)
        required = remaining / weeks
        current = recent[dept.id] / (VELOCITY_WINDOW_DAYS / 7)
        percent = done / total_target * 100
        results.append(
            DepartmentPace(
                department_id=dept.id,
                name=dept.name,
                total_target=total_target,
                completed=done,
                remaining=remaining,
                required_velocity=required,
                current_velocity=current,
                on_track=current >= required or percent >= 100,
                percent_complete=percent,
            )
        )
    return results


def _reference(session: Session):
    departments = session.execute(select(Department).order_by(Department.name)).scalars().all()
    tasks = session.execute(select(QuotaTask).order_by(QuotaTask.task_name)).scalars().all()
    return departments, tasks


def risk_radar(session: Session, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or utc_today()
    departments, tasks = _reference(session)
    procedures = session.execute(
        select(Procedure).where(Procedure.student_id == user_id)
    ).scalars().all()
    paces = pace_by_department(departments, tasks, procedures, today)
    return {
        "weeksRemaining": weeks_remaining(today),
        "critical": [p.as_payload() for p in paces if not p.on_track and p.remaining > 0],
        "onTrack": [p.as_payload() for p in paces if p.on_track],
    }


def department_progress(session: Session, user_id: str) -> List[Dict[str, Any]]:
    """Verified counts against quota targets, per department and task."""

    departments, tasks = _reference(session)
    counts = dict(
        session.execute(
            select(Procedure.quota_task_id, func.count(Procedure.id))
            .where(Procedure.student_id == user_id, Procedure.status == VERIFIED)
            .group_by(Procedure.quota_task_id)
        ).all()
    )
    tasks_by_department: Dict[str, List[QuotaTask]] = defaultdict(list)
    for task in tasks:
        tasks_by_department[task.department_id].append(task)

    progress: List[Dict[str, Any]] = []
    for dept in departments:
        rows = []
        for task in tasks_by_department.get(dept.id, []):
            done = int(counts.get(task.id, 0))
            rows.append(
                {
                    "taskId": task.id,
                    "name": task.task_name,
                    "target": task.target,
                    "completed": done,
                    "isPredefined": task.is_predefined,
                }
            )
        target = sum(r["target"] for r in rows)
        # Completions beyond a task's target do not count toward other tasks.
        done = sum(min(r["completed"], r["target"]) for r in rows)
        progress.append(
            {
                "departmentId": dept.id,
                "name": dept.name,
                "target": target,
                "completed": done,
                "percent": round(done / target * 100, 1) if target else 0.0,
                "tasks": rows,
            }
        )
    return progress


def batch_stats(session: Session) -> List[Dict[str, Any]]:
    """Verified procedure totals per batch."""

    rows = session.execute(
        select(Batch.name, func.count(Procedure.id))
        .join(UserBatch, UserBatch.batch_id == Batch.id)
        .join(
            Procedure,
            (Procedure.student_id == UserBatch.user_id) & (Procedure.status == VERIFIED),
        )
        .group_by(Batch.name)
        .order_by(Batch.name)
    ).all()
    return [{"batch": name, "total": int(total)} for name, total in rows]


def batch_comparison(session: Session, user_id: str) -> Dict[str, Any]:
    """Per-department verified counts for the caller against their batch average.

    Callers without a batch are compared with the first batch that has data.
    """

    batch = session.execute(
        select(Batch)
        .join(UserBatch, UserBatch.batch_id == Batch.id)
        .where(UserBatch.user_id == user_id)
        .order_by(Batch.name)
    ).scalars().first()
    if batch is None:
        stats = batch_stats(session)
        if not stats:
            return {"batch": None, "departments": []}
        batch = session.execute(select(Batch).where(Batch.name == stats[0]["batch"])).scalar_one()

    member_ids = list(
        session.execute(select(UserBatch.user_id).where(UserBatch.batch_id == batch.id)).scalars()
    )
    members = max(1, len(member_ids))
    batch_counts = dict(
        session.execute(
            select(Department.name, func.count(Procedure.id))
            .join(Procedure, Procedure.department_id == Department.id)
            .where(Procedure.student_id.in_(member_ids), Procedure.status == VERIFIED)
            .group_by(Department.name)
        ).all()
    )
    my_counts = dict(
        session.execute(
            select(Department.name, func.count(Procedure.id))
            .join(Procedure, Procedure.department_id == Department.id)
            .where(Procedure.student_id == user_id, Procedure.status == VERIFIED)
            .group_by(Department.name)
        ).all()
    )
    names = sorted(set(batch_counts) | set(my_counts))
    return {
        "batch": batch.name,
        "departments": [
            {
                "department": name,
                "myCount": int(my_counts.get(name, 0)),
                "batchAvg": round(batch_counts.get(name, 0) / members, 2),
            }
            for name in names
        ],
    }


__all__ = [
    "DepartmentPace",
    "batch_comparison",
    "batch_stats",
    "department_progress",
    "pace_by_department",
    "risk_radar",
    "weeks_remaining",
]
