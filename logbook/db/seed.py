"""Reference data inserted on first start."""

from __future__ import annotations

from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Department, QuotaTask

# Department name -> [(task name, target)]
DEFAULT_DEPARTMENTS: Dict[str, List[Tuple[str, int]]] = {
    "Oral Maxillofacial Surgery": [("Simple Exo", 20), ("Surgical Exo", 5)],
    "Oral Medicine and Radiology": [
        ("Case History", 15),
        ("Periapical Radiograph", 20),
        ("OPG Interpretation", 5),
    ],
    "Periodontics": [("Scaling and Root Planing", 20), ("Periodontal Charting", 10)],
    "Pediatric Dentistry": [
        ("Pediatric Restoration", 10),
        ("Pulpotomy", 5),
        ("Fluoride Application", 10),
    ],
    "Endodontics": [("RCT Anterior", 5), ("RCT Posterior", 5)],
    "Prosthodontics": [("Complete Denture", 2), ("Crown Preparation", 5), ("FPD", 2)],
    "Orthodontics": [("Removable Appliance", 2), ("Model Analysis", 5)],
    "Public Health Dentistry": [("Screening Camp", 3), ("Oral Health Education", 5)],
}


def seed_reference_data(session: Session) -> None:
    """Insert default departments, predefined tasks and badges when missing."""

    from logbook.gamification import ensure_badge_catalog

    existing = {
        dept.name: dept for dept in session.execute(select(Department)).scalars()
    }
    for name, tasks in DEFAULT_DEPARTMENTS.items():
        department = existing.get(name)
        if department is None:
            department = Department(name=name)
            session.add(department)
            session.flush()
        known_tasks = set(
            session.execute(
                select(QuotaTask.task_name).where(QuotaTask.department_id == department.id)
            ).scalars()
        )
        for task_name, target in tasks:
            if task_name in known_tasks:
                continue
            session.add(
                QuotaTask(
                    department_id=department.id,
                    task_name=task_name,
                    target=target,
                    is_predefined=True,
                )
            )
    ensure_badge_catalog(session)
    session.flush()
