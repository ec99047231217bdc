"""SQLAlchemy models for the logbook schema."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    """Application roles, most privileged first."""

    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


class ProcedureStatus(str, enum.Enum):
    """Approval states of a logged procedure."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(String, primary_key=True, default=_uuid)
    email = sa.Column(String, nullable=False, unique=True, index=True)
    password_hash = sa.Column(String, nullable=False)
    full_name = sa.Column(String, nullable=True)
    role = sa.Column(String, nullable=False, default=Role.STUDENT.value)
    failed_login_attempts = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    account_locked_until = sa.Column(DateTime(timezone=True), nullable=True)
    last_login = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class Profile(Base):
    __tablename__ = "profiles"

    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    department_id = sa.Column(String, ForeignKey("departments.id"), nullable=True)
    theme_preset = sa.Column(String, nullable=True)
    custom_primary_hsl = sa.Column(String, nullable=True)
    custom_secondary_hsl = sa.Column(String, nullable=True)
    custom_accent_hsl = sa.Column(String, nullable=True)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Department(Base):
    __tablename__ = "departments"

    id = sa.Column(String, primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False, unique=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class QuotaTask(Base):
    __tablename__ = "quota_tasks"

    id = sa.Column(String, primary_key=True, default=_uuid)
    department_id = sa.Column(String, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    task_name = sa.Column(String, nullable=False)
    target = sa.Column(Integer, nullable=False, default=0)
    is_predefined = sa.Column(Boolean, nullable=False, default=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("department_id", "task_name", name="uq_quota_tasks_department_name"),
        sa.CheckConstraint("target >= 0", name="ck_quota_tasks_target_positive"),
        sa.Index("idx_quota_tasks_department", "department_id"),
    )


class Batch(Base):
    __tablename__ = "batches"

    id = sa.Column(String, primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False, unique=True)
    code = sa.Column(String, nullable=True)
    academic_year = sa.Column(String, nullable=True)
    intake_label = sa.Column(String, nullable=True)
    year_of_study = sa.Column(String, nullable=True)
    max_members = sa.Column(Integer, nullable=True)
    created_by = sa.Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserBatch(Base):
    __tablename__ = "user_batches"

    id = sa.Column(String, primary_key=True, default=_uuid)
    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    batch_id = sa.Column(String, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("user_id", "batch_id", name="uq_user_batches_pair"),
        sa.Index("idx_user_batches_batch", "batch_id"),
    )


class Procedure(Base):
    __tablename__ = "procedures"

    id = sa.Column(String, primary_key=True, default=_uuid)
    student_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    department_id = sa.Column(String, ForeignKey("departments.id"), nullable=True)
    quota_task_id = sa.Column(String, ForeignKey("quota_tasks.id", ondelete="SET NULL"), nullable=True)
    procedure_type = sa.Column(String, nullable=False)
    procedure_date = sa.Column(Date, nullable=False)
    supervisor_name = sa.Column(String, nullable=False)
    patient_name = sa.Column(String, nullable=True)
    patient_op_number = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False, default=ProcedureStatus.PENDING.value)
    rejection_reason = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_procedures_student", "student_id"),
        sa.Index("idx_procedures_status", "status"),
        sa.Index("idx_procedures_department", "department_id"),
    )


class ProcedureDraft(Base):
    """Per-user add-case form state including manual-override flags."""

    __tablename__ = "procedure_drafts"

    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    values = sa.Column(sa.JSON, nullable=False, default=dict)
    department_set_manually = sa.Column(Boolean, nullable=False, default=False)
    task_set_manually = sa.Column(Boolean, nullable=False, default=False)
    supervisor_set_manually = sa.Column(Boolean, nullable=False, default=False)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Message(Base):
    __tablename__ = "messages"

    id = sa.Column(String, primary_key=True, default=_uuid)
    sender_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = sa.Column(Text, nullable=False)
    batch_id = sa.Column(String, ForeignKey("batches.id", ondelete="CASCADE"), nullable=True)
    recipient_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id = sa.Column(String, primary_key=True, default=_uuid)
    message_id = sa.Column(String, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reaction_type = sa.Column(String, nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("message_id", "user_id", "reaction_type", name="uq_message_reactions"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id = sa.Column(String, primary_key=True, default=_uuid)
    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = sa.Column(String, nullable=False)
    content = sa.Column(Text, nullable=False)
    type = sa.Column(String, nullable=False, default="info")
    related_id = sa.Column(String, nullable=True)
    read = sa.Column(Boolean, nullable=False, default=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (sa.Index("idx_notifications_user", "user_id"),)


class Badge(Base):
    __tablename__ = "badges"

    id = sa.Column(String, primary_key=True, default=_uuid)
    code = sa.Column(String, nullable=False, unique=True)
    name = sa.Column(String, nullable=False)
    icon = sa.Column(String, nullable=False)
    description = sa.Column(String, nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserBadge(Base):
    __tablename__ = "user_badges"

    id = sa.Column(String, primary_key=True, default=_uuid)
    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_id = sa.Column(String, ForeignKey("badges.id", ondelete="CASCADE"), nullable=False)
    earned_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (sa.UniqueConstraint("user_id", "badge_id", name="uq_user_badges_pair"),)


class UserStats(Base):
    __tablename__ = "user_stats"

    id = sa.Column(String, primary_key=True, default=_uuid)
    user_id = sa.Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    current_streak = sa.Column(Integer, nullable=False, default=0)
    longest_streak = sa.Column(Integer, nullable=False, default=0)
    last_log_date = sa.Column(Date, nullable=True)
    total_procedures = sa.Column(Integer, nullable=False, default=0)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


__all__ = [
    "Base",
    "Role",
    "ProcedureStatus",
    "User",
    "Profile",
    "Department",
    "QuotaTask",
    "Batch",
    "UserBatch",
    "Procedure",
    "ProcedureDraft",
    "Message",
    "MessageReaction",
    "Notification",
    "Badge",
    "UserBadge",
    "UserStats",
]
