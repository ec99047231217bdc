"""Logging streaks and achievement badges."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logbook.db.models import Badge, Procedure, UserBadge, UserStats
from logbook.time_utils import utc_today

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BadgeRule:
    code: str
    name: str
    icon: str
    description: str
    earned: Callable[["_Progress"], bool]


@dataclass(frozen=True)
class _Progress:
    total: int
    streak: int
    departments: int


BADGE_RULES: Sequence[BadgeRule] = (
    BadgeRule("first_case", "First Case", "🦷", "Logged your first procedure", lambda p: p.total >= 1),
    BadgeRule("ten_cases", "Ten Cases", "🔟", "Logged 10 procedures", lambda p: p.total >= 10),
    BadgeRule("half_century", "Half Century", "🏅", "Logged 50 procedures", lambda p: p.total >= 50),
    BadgeRule("on_fire", "On Fire", "🔥", "Logged cases 3 days in a row", lambda p: p.streak >= 3),
    BadgeRule("week_warrior", "Week Warrior", "📅", "Logged cases 7 days in a row", lambda p: p.streak >= 7),
    BadgeRule("explorer", "Explorer", "🧭", "Logged cases in 4 departments", lambda p: p.departments >= 4),
)


def ensure_badge_catalog(session: Session) -> None:
    """Insert any badge from :data:`BADGE_RULES` missing in the database."""

    known = set(session.execute(select(Badge.code)).scalars())
    for rule in BADGE_RULES:
        if rule.code not in known:
            session.add(
                Badge(code=rule.code, name=rule.name, icon=rule.icon, description=rule.description)
            )
    session.flush()


def next_streak(current: int, last_log: Optional[date], today: date) -> int:
    """Return the streak after logging on *today*."""

    if last_log is None:
        return 1
    if last_log == today:
        return max(current, 1)
    if last_log == today - timedelta(days=1):
        return current + 1
    if last_log > today:
        # last_log in the future: leave the streak as is
        return max(current, 1)
    return 1


def _stats_for(session: Session, user_id: str) -> UserStats:
    stats = session.execute(
        select(UserStats).where(UserStats.user_id == user_id)
    ).scalar_one_or_none()
    if stats is None:
        stats = UserStats(user_id=user_id, current_streak=0, longest_streak=0, total_procedures=0)
        session.add(stats)
        session.flush()
    return stats


def record_log(
    session: Session, user_id: str, today: Optional[date] = None
) -> Tuple[UserStats, List[Badge]]:
    """Update streak counters for a new procedure and award earned badges."""

    today = today or utc_today()
    stats = _stats_for(session, user_id)
    stats.current_streak = next_streak(stats.current_streak or 0, stats.last_log_date, today)
    stats.longest_streak = max(stats.longest_streak or 0, stats.current_streak)
    if stats.last_log_date is None or stats.last_log_date < today:
        stats.last_log_date = today
    stats.total_procedures = (stats.total_procedures or 0) + 1
    session.flush()
    awarded = award_badges(session, user_id, stats)
    return stats, awarded


def award_badges(session: Session, user_id: str, stats: UserStats) -> List[Badge]:
    departments = session.execute(
        select(func.count(func.distinct(Procedure.department_id))).where(
            Procedure.student_id == user_id
        )
    ).scalar_one()
    progress = _Progress(
        total=stats.total_procedures or 0,
        streak=stats.current_streak or 0,
        departments=int(departments or 0),
    )
    badges: Dict[str, Badge] = {
        b.code: b for b in session.execute(select(Badge)).scalars()
    }
    earned_ids = set(
        session.execute(select(UserBadge.badge_id).where(UserBadge.user_id == user_id)).scalars()
    )
    awarded: List[Badge] = []
    for rule in BADGE_RULES:
        badge = badges.get(rule.code)
        if badge is None or badge.id in earned_ids or not rule.earned(progress):
            continue
        session.add(UserBadge(user_id=user_id, badge_id=badge.id))
        awarded.append(badge)
    if awarded:
        session.flush()
        logger.info("badges_awarded", user_id=user_id, badges=[b.code for b in awarded])
    return awarded


def summary(session: Session, user_id: str) -> Dict[str, object]:
    stats = _stats_for(session, user_id)
    earned = session.execute(
        select(UserBadge, Badge)
        .join(Badge, Badge.id == UserBadge.badge_id)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.desc())
    ).all()
    catalog = session.execute(select(Badge).order_by(Badge.name)).scalars().all()
    earned_ids = {badge.id for _, badge in earned}
    return {
        "stats": {
            "currentStreak": stats.current_streak,
            "longestStreak": stats.longest_streak,
            "lastLogDate": stats.last_log_date.isoformat() if stats.last_log_date else None,
            "totalProcedures": stats.total_procedures,
        },
        "earned": [
            {
                "id": badge.id,
                "code": badge.code,
                "name": badge.name,
                "icon": badge.icon,
                "description": badge.description,
                "earnedAt": user_badge.earned_at.isoformat(),
            }
            for user_badge, badge in earned
        ],
        "locked": [
            {"id": b.id, "code": b.code, "name": b.name, "icon": b.icon, "description": b.description}
            for b in catalog
            if b.id not in earned_ids
        ],
    }


__all__ = [
    "BADGE_RULES",
    "award_badges",
    "ensure_badge_catalog",
    "next_streak",
    "record_log",
    "summary",
]
