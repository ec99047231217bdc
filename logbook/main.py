"""FastAPI application for the dental clinical logbook.

The service logs clinical procedures against department quotas, runs the
dictated-note pipeline that pre-fills the add-case form, and serves the
approval, messaging, gamification and analytics endpoints used by the
dashboard. Writes that other sessions care about are pushed over
``/ws/changes``.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

import structlog
from dotenv import load_dotenv
from fastapi import (
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketDisconnect
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, delete, func, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from logbook import analytics, gamification, themes
from logbook.auth import (
    DuplicateEmailError,
    authenticate_user,
    find_user_by_email,
    register_user,
    validate_password_strength,
)
from logbook.capture import CaptureRegistry
from logbook.clinical_parsing import department_refs, task_refs
from logbook.config import get_settings
from logbook.db import get_session, initialise_schema
from logbook.db.models import (
    Batch,
    Department,
    Message,
    MessageReaction,
    Procedure,
    ProcedureDraft,
    ProcedureStatus,
    Profile,
    QuotaTask,
    Role,
    User,
    UserBadge,
    UserBatch,
)
from logbook.form_state import FormValidationError, ManualFlags, ProcedureForm
from logbook.key_manager import SecretError, save_api_key
from logbook.note_pipeline import extract_fields, normalize_transcript, run_pipeline
from logbook.notifications_service import (
    NotificationNotFoundError,
    create_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    serialise as serialise_notification,
)
from logbook.observability import (
    REQUEST_COUNTER,
    REQUEST_LATENCY,
    normalise_path_for_metrics,
)
from logbook.openai_client import ai_available, transcribe_audio
from logbook.realtime import DELETE, INSERT, UPDATE, Audience, ChangeFeedManager
from logbook.roster_import import read_roster
from logbook.sanitizer import sanitize_optional, sanitize_text
from logbook.security import (
    get_current_user,
    is_staff,
    require_roles,
    create_access_token,
    ws_authenticate,
)
from logbook.time_utils import to_iso

load_dotenv()

LOG_LEVEL = get_settings().log_level
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)

change_feed = ChangeFeedManager()
capture_registry = CaptureRegistry()

STAFF = require_roles(Role.INSTRUCTOR.value)
ADMIN = require_roles()


def current_trace_id() -> str | None:
    return _TRACE_ID_CTX.get()


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS: Tuple[str, ...] = ("message", "detail", "error", "msg")
_ERROR_RESERVED_KEYS = {"code", "details", *_ERROR_MESSAGE_KEYS}


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None
    extras: Dict[str, Any] = {}

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        if "details" in payload:
            details = payload["details"]
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
        else:
            message = str(payload) if payload else message
        extras = {k: v for k, v in payload.items() if k not in _ERROR_RESERVED_KEYS}
    elif isinstance(payload, list):
        rendered = [str(item) for item in payload if item not in (None, "")]
        if rendered:
            message = "; ".join(rendered)
        details = payload
    elif payload not in (None, ""):
        message = str(payload)

    error_payload: Dict[str, Any] = {"message": message}
    if code is not None:
        error_payload["code"] = code
    if details is not None:
        error_payload["details"] = details
    if extras:
        error_payload.update(extras)
    return ErrorResponse(error=ErrorDetail(**error_payload))


def _error(status_code: int, message: str, code: str, details: Any | None = None) -> HTTPException:
    detail: Dict[str, Any] = {"message": message, "code": code}
    if details is not None:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("lifespan_startup")
    initialise_schema()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - START_TIME)


app = FastAPI(title="Dental Logbook API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")
        _TRACE_ID_CTX.reset(token)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(exclude_none=True),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    error_payload = _build_error_response(
        {"message": "Request validation failed", "code": "VALIDATION_ERROR", "details": details},
        status_code=422,
    )
    return JSONResponse(status_code=422, content=error_payload.model_dump(exclude_none=True))


_origins = get_settings().cors_origins or [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:8080",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _origins else _origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Liveness check with a best-effort database ping."""

    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.warning("health_db_check_failed")
        db_ok = False
    return {"status": "ok", "db": db_ok, "uptime": time.time() - START_TIME}


@app.get("/metrics", tags=["system"], response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterModel(CamelModel):
    email: str
    password: str
    full_name: Optional[str] = Field(default=None, alias="fullName")


class LoginModel(CamelModel):
    email: str
    password: str


class ApiKeyModel(BaseModel):
    key: str


class NoteRequest(BaseModel):
    text: str = ""
    correct: bool = True


class DraftEditModel(CamelModel):
    department_id: Optional[str] = Field(default=None, alias="departmentId")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    supervisor_name: Optional[str] = Field(default=None, alias="supervisorName")
    procedure_date: Optional[date] = Field(default=None, alias="procedureDate")
    patient_name: Optional[str] = Field(default=None, alias="patientName")
    patient_op_number: Optional[str] = Field(default=None, alias="patientOpNumber")


class ProcedureCreateModel(CamelModel):
    department_id: Optional[str] = Field(default=None, alias="departmentId")
    task_id: Optional[str] = Field(default=None, alias="taskId")
    supervisor_name: str = Field(default="", alias="supervisorName")
    procedure_date: Optional[date] = Field(default=None, alias="procedureDate")
    patient_name: Optional[str] = Field(default=None, alias="patientName")
    patient_op_number: Optional[str] = Field(default=None, alias="patientOpNumber")


class RejectModel(BaseModel):
    reason: str = ""


class DepartmentModel(BaseModel):
    name: str


class TaskCreateModel(CamelModel):
    department_id: str = Field(alias="departmentId")
    task_name: str = Field(alias="taskName")
    target: int = Field(default=0, ge=0)


class TaskUpdateModel(BaseModel):
    target: int = Field(ge=0)


class BatchModel(CamelModel):
    name: str
    code: Optional[str] = None
    academic_year: Optional[str] = Field(default=None, alias="academicYear")
    intake_label: Optional[str] = Field(default=None, alias="intakeLabel")
    year_of_study: Optional[str] = Field(default=None, alias="yearOfStudy")
    max_members: Optional[int] = Field(default=None, alias="maxMembers", ge=1)


class BatchUpdateModel(CamelModel):
    name: Optional[str] = None
    code: Optional[str] = None
    academic_year: Optional[str] = Field(default=None, alias="academicYear")
    intake_label: Optional[str] = Field(default=None, alias="intakeLabel")
    year_of_study: Optional[str] = Field(default=None, alias="yearOfStudy")
    max_members: Optional[int] = Field(default=None, alias="maxMembers", ge=1)


class MemberModel(CamelModel):
    user_id: str = Field(alias="userId")


class RoleModel(BaseModel):
    role: str


class RosterImportModel(BaseModel):
    text: str


class MessageModel(CamelModel):
    content: str
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")


class ReactionModel(CamelModel):
    reaction_type: str = Field(alias="reactionType", min_length=1, max_length=32)


class ThemeModel(CamelModel):
    preset: Optional[str] = None
    primary: Optional[str] = None
    secondary: Optional[str] = None
    accent: Optional[str] = None


# ---------------------------------------------------------------------------
# Serialisers and lookups
# ---------------------------------------------------------------------------


def _user_payload(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "role": user.role,
        "lastLogin": to_iso(user.last_login),
        "createdAt": to_iso(user.created_at),
    }


def _procedure_payload(proc: Procedure) -> Dict[str, Any]:
    return {
        "id": proc.id,
        "studentId": proc.student_id,
        "departmentId": proc.department_id,
        "quotaTaskId": proc.quota_task_id,
        "procedureType": proc.procedure_type,
        "procedureDate": proc.procedure_date.isoformat() if proc.procedure_date else None,
        "supervisorName": proc.supervisor_name,
        "patientName": proc.patient_name,
        "patientOpNumber": proc.patient_op_number,
        "status": proc.status,
        "rejectionReason": proc.rejection_reason,
        "createdAt": to_iso(proc.created_at),
    }


def _batch_payload(batch: Batch, member_count: int = 0) -> Dict[str, Any]:
    return {
        "id": batch.id,
        "name": batch.name,
        "code": batch.code,
        "academicYear": batch.academic_year,
        "intakeLabel": batch.intake_label,
        "yearOfStudy": batch.year_of_study,
        "maxMembers": batch.max_members,
        "memberCount": member_count,
        "createdAt": to_iso(batch.created_at),
    }


def _task_payload(task: QuotaTask) -> Dict[str, Any]:
    return {
        "id": task.id,
        "departmentId": task.department_id,
        "taskName": task.task_name,
        "target": task.target,
        "isPredefined": bool(task.is_predefined),
    }


def _get_or_404(session: Session, model, identifier: str, label: str):
    row = session.get(model, identifier)
    if row is None:
        raise _error(404, f"{label} not found", "NOT_FOUND")
    return row


def _reference_data(session: Session):
    departments = session.execute(select(Department).order_by(Department.name)).scalars().all()
    tasks = session.execute(
        select(QuotaTask).order_by(QuotaTask.department_id, QuotaTask.task_name)
    ).scalars().all()
    return department_refs(departments), task_refs(tasks)


def _batch_member_ids(session: Session, batch_id: str) -> List[str]:
    return list(
        session.execute(select(UserBatch.user_id).where(UserBatch.batch_id == batch_id)).scalars()
    )


async def _publish(table: str, event: str, record: Dict[str, Any], audience: Audience) -> None:
    delivered = await change_feed.publish(table, event, record, audience)
    logger.debug("change_published", table=table, change_event=event, delivered=delivered)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def _token_response(user: User) -> Dict[str, Any]:
    return {
        "access_token": create_access_token(user.id, user.role, user.email),
        "token_type": "bearer",
        "expires_in": get_settings().access_token_expire_minutes * 60,
        "user": _user_payload(user),
    }


@app.post("/api/auth/register", status_code=201)
def register(model: RegisterModel, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Create a student account and issue an access token.

    The very first account on an empty database becomes the administrator.
    """

    if "@" not in model.email:
        raise _error(422, "A valid email address is required", "INVALID_EMAIL")
    try:
        validate_password_strength(model.password)
    except ValueError as exc:
        raise _error(422, str(exc), "WEAK_PASSWORD")
    first_account = session.execute(select(func.count(User.id))).scalar_one() == 0
    role = Role.ADMIN.value if first_account else Role.STUDENT.value
    try:
        user = register_user(
            session, model.email, model.password, role, full_name=sanitize_text(model.full_name or "")
        )
    except DuplicateEmailError:
        raise _error(409, "Email already registered", "DUPLICATE_EMAIL")
    logger.info("user_registered", user_id=user.id, role=role)
    return _token_response(user)


@app.post("/api/auth/login")
def login(model: LoginModel, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Validate credentials and return a JWT on success."""

    user = authenticate_user(session, model.email, model.password)
    if user is None:
        # Commit the failure counter before the error response.
        session.commit()
        logger.info("login_failed", email=model.email.strip().lower())
        raise _error(401, "Invalid credentials", "INVALID_CREDENTIALS")
    logger.info("login_succeeded", user_id=user.id)
    return _token_response(user)


@app.get("/api/auth/me")
def me(user=Depends(get_current_user), session: Session = Depends(get_session)) -> Dict[str, Any]:
    account = _get_or_404(session, User, user["sub"], "User")
    batches = session.execute(
        select(Batch)
        .join(UserBatch, UserBatch.batch_id == Batch.id)
        .where(UserBatch.user_id == account.id)
        .order_by(Batch.name)
    ).scalars().all()
    profile = session.get(Profile, account.id)
    return {
        **_user_payload(account),
        "departmentId": profile.department_id if profile else None,
        "batches": [{"id": b.id, "name": b.name} for b in batches],
    }


@app.post("/api/admin/api-key")
def set_api_key(model: ApiKeyModel, user=Depends(ADMIN)) -> Dict[str, str]:
    """Store the OpenAI key used by the note assistants."""

    try:
        save_api_key(model.key)
    except SecretError as exc:
        raise _error(400, str(exc), "KEY_NOT_SAVED")
    logger.info("api_key_saved", user_id=user["sub"])
    return {"status": "saved"}


# ---------------------------------------------------------------------------
# Departments and quota tasks
# ---------------------------------------------------------------------------


@app.get("/api/departments")
def get_departments(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    departments = session.execute(select(Department).order_by(Department.name)).scalars().all()
    return [{"id": d.id, "name": d.name} for d in departments]


@app.post("/api/departments", status_code=201)
def create_department(
    model: DepartmentModel, user=Depends(ADMIN), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    name = sanitize_text(model.name)
    if not name:
        raise _error(422, "Department name is required", "VALIDATION_ERROR")
    existing = session.execute(
        select(Department).where(func.lower(Department.name) == name.lower())
    ).scalar_one_or_none()
    if existing is not None:
        raise _error(409, "Department already exists", "DUPLICATE_DEPARTMENT")
    department = Department(name=name)
    session.add(department)
    session.flush()
    return {"id": department.id, "name": department.name}


@app.get("/api/tasks")
def get_tasks(
    department_id: Optional[str] = None,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    stmt = select(QuotaTask).order_by(QuotaTask.task_name)
    if department_id:
        stmt = stmt.where(QuotaTask.department_id == department_id)
    return [_task_payload(t) for t in session.execute(stmt).scalars()]


@app.post("/api/tasks", status_code=201)
def create_task(
    model: TaskCreateModel, user=Depends(STAFF), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    _get_or_404(session, Department, model.department_id, "Department")
    name = sanitize_text(model.task_name)
    if not name:
        raise _error(422, "Task name is required", "VALIDATION_ERROR")
    task = QuotaTask(
        department_id=model.department_id,
        task_name=name,
        target=model.target,
        is_predefined=False,
    )
    session.add(task)
    try:
        session.flush()
    except IntegrityError:
        raise _error(409, "Task already exists in this department", "DUPLICATE_TASK")
    logger.info("quota_task_created", task_id=task.id, department_id=task.department_id)
    return _task_payload(task)


@app.patch("/api/tasks/{task_id}")
def update_task(
    task_id: str,
    model: TaskUpdateModel,
    user=Depends(STAFF),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    task = _get_or_404(session, QuotaTask, task_id, "Task")
    task.target = model.target
    session.flush()
    return _task_payload(task)


@app.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: str, user=Depends(STAFF), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    task = _get_or_404(session, QuotaTask, task_id, "Task")
    if task.is_predefined:
        raise _error(400, "Predefined tasks cannot be deleted", "PREDEFINED_TASK")
    session.delete(task)
    return {"deleted": task_id}


# ---------------------------------------------------------------------------
# Note assistants
# ---------------------------------------------------------------------------


@app.post("/api/ai/correct-note")
def correct_note(req: NoteRequest, user=Depends(get_current_user)) -> Dict[str, Any]:
    """Fix dictation errors in a note; the input is returned on any failure."""

    result = normalize_transcript(req.text, enabled=req.correct)
    return {"correctedText": result.text, "corrected": result.corrected}


@app.post("/api/ai/parse-note")
def parse_note(
    req: NoteRequest, user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    """Extract department, task and supervisor from a note."""

    departments, tasks = _reference_data(session)
    extraction = extract_fields(req.text, departments, tasks)
    return {**extraction.fields.as_payload(), "source": extraction.source}


@app.get("/api/notes/transcribe/status")
def transcribe_status(user=Depends(get_current_user)) -> Dict[str, Any]:
    return {"available": ai_available(), "active": capture_registry.active(user["sub"])}


@app.post("/api/notes/transcribe")
async def transcribe_note(
    file: UploadFile = File(...), user=Depends(get_current_user)
) -> Dict[str, Any]:
    """Transcribe one dictated clip.

    A new upload by the same user stops the previous capture, whose result is
    then discarded.
    """

    if not ai_available():
        return {"available": False, "transcript": None, "state": "unavailable"}
    data = await file.read()
    filename = file.filename or "clip.webm"
    user_id = user["sub"]

    async def recognizer() -> str:
        return await run_in_threadpool(transcribe_audio, data, filename)

    capture = capture_registry.start(user_id, recognizer)
    try:
        transcript = await capture.run(timeout=get_settings().transcribe_timeout_secs)
    finally:
        capture_registry.release(user_id, capture)
    return {
        "available": True,
        "transcript": transcript or None,
        "state": capture.state.value,
    }


@app.delete("/api/notes/transcribe")
def stop_transcription(user=Depends(get_current_user)) -> Dict[str, bool]:
    return {"stopped": capture_registry.stop(user["sub"])}


# ---------------------------------------------------------------------------
# Add-case drafts
# ---------------------------------------------------------------------------


def _load_draft(session: Session, user_id: str) -> Tuple[ProcedureDraft, ProcedureForm]:
    draft = session.get(ProcedureDraft, user_id)
    if draft is None:
        draft = ProcedureDraft(user_id=user_id, values={})
        session.add(draft)
    manual = ManualFlags(
        department=bool(draft.department_set_manually),
        task=bool(draft.task_set_manually),
        supervisor=bool(draft.supervisor_set_manually),
    )
    return draft, ProcedureForm.from_values(draft.values, manual)


def _store_draft(session: Session, draft: ProcedureDraft, form: ProcedureForm) -> None:
    draft.values = form.values()
    draft.department_set_manually = form.manual.department
    draft.task_set_manually = form.manual.task
    draft.supervisor_set_manually = form.manual.supervisor
    session.flush()


def _validation_error(exc: FormValidationError) -> HTTPException:
    return _error(422, "Procedure form is incomplete", "VALIDATION_ERROR", exc.errors)


async def _log_procedure(session: Session, user_id: str, form: ProcedureForm) -> Procedure:
    """Validate *form*, persist the procedure and broadcast the side effects."""

    _, tasks = _reference_data(session)
    task_map = {t.id: t for t in tasks}
    try:
        form.validate(task_map)
    except FormValidationError as exc:
        raise _validation_error(exc)
    proc = Procedure(
        student_id=user_id,
        department_id=form.department_id,
        quota_task_id=form.task_id,
        procedure_type=task_map[form.task_id].task_name,
        procedure_date=form.procedure_date,
        supervisor_name=sanitize_text(form.supervisor_name),
        patient_name=sanitize_optional(form.patient_name),
        patient_op_number=sanitize_optional(form.patient_op_number),
        status=ProcedureStatus.PENDING.value,
    )
    session.add(proc)
    session.flush()
    stats, awarded = gamification.record_log(session, user_id)
    earned: List[UserBadge] = []
    if awarded:
        earned = session.execute(
            select(UserBadge).where(
                UserBadge.user_id == user_id, UserBadge.badge_id.in_([b.id for b in awarded])
            )
        ).scalars().all()
    session.commit()
    logger.info("procedure_logged", procedure_id=proc.id, user_id=user_id, badges=len(awarded))

    await _publish("procedures", INSERT, _procedure_payload(proc), Audience.users(user_id, staff=True))
    await _publish(
        "user_stats",
        UPDATE,
        {
            "id": stats.id,
            "userId": user_id,
            "currentStreak": stats.current_streak,
            "longestStreak": stats.longest_streak,
            "totalProcedures": stats.total_procedures,
            "lastLogDate": stats.last_log_date.isoformat() if stats.last_log_date else None,
        },
        Audience.users(user_id),
    )
    for row in earned:
        await _publish(
            "user_badges",
            INSERT,
            {"id": row.id, "userId": user_id, "badgeId": row.badge_id, "earnedAt": to_iso(row.earned_at)},
            Audience.users(user_id),
        )
    return proc


@app.get("/api/drafts/procedure")
def get_draft(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    _, form = _load_draft(session, user["sub"])
    return form.as_payload()


@app.patch("/api/drafts/procedure")
def edit_draft(
    model: DraftEditModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Apply direct user edits; every touched field becomes manually set."""

    draft, form = _load_draft(session, user["sub"])
    form.apply_edits(model.model_dump(exclude_unset=True))
    _store_draft(session, draft, form)
    return form.as_payload()


@app.delete("/api/drafts/procedure")
def reset_draft(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    draft, form = _load_draft(session, user["sub"])
    form.reset()
    _store_draft(session, draft, form)
    return form.as_payload()


@app.post("/api/drafts/procedure/parse")
def parse_into_draft(
    req: NoteRequest,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Run the note pipeline and fill the fields the user has not touched."""

    departments, tasks = _reference_data(session)
    result = run_pipeline(req.text, departments, tasks, correct=req.correct)
    draft, form = _load_draft(session, user["sub"])
    applied = form.apply_extraction(result.fields, {t.id: t for t in tasks})
    _store_draft(session, draft, form)
    return {"draft": form.as_payload(), "result": result.as_payload(), "applied": applied}


@app.post("/api/drafts/procedure/submit", status_code=201)
async def submit_draft(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    user_id = user["sub"]
    draft, form = _load_draft(session, user_id)
    proc = await _log_procedure(session, user_id, form)
    form.reset()
    _store_draft(session, draft, form)
    return {"procedure": _procedure_payload(proc), "draft": form.as_payload()}


# ---------------------------------------------------------------------------
# Procedures and approvals
# ---------------------------------------------------------------------------


@app.post("/api/procedures", status_code=201)
async def create_procedure(
    model: ProcedureCreateModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    form = ProcedureForm(
        department_id=model.department_id,
        task_id=model.task_id,
        supervisor_name=model.supervisor_name,
        procedure_date=model.procedure_date,
        patient_name=model.patient_name,
        patient_op_number=model.patient_op_number,
    )
    proc = await _log_procedure(session, user["sub"], form)
    return _procedure_payload(proc)


def _procedure_query(
    user: Dict[str, Any],
    status_filter: Optional[str],
    department_id: Optional[str],
    student_id: Optional[str],
):
    stmt = select(Procedure).order_by(Procedure.procedure_date.desc(), Procedure.created_at.desc())
    if is_staff(user):
        if student_id:
            stmt = stmt.where(Procedure.student_id == student_id)
    else:
        stmt = stmt.where(Procedure.student_id == user["sub"])
    if status_filter:
        stmt = stmt.where(Procedure.status == status_filter)
    if department_id:
        stmt = stmt.where(Procedure.department_id == department_id)
    return stmt


@app.get("/api/procedures")
def get_procedures(
    status_filter: Optional[ProcedureStatus] = Query(default=None, alias="status"),
    department_id: Optional[str] = None,
    student_id: Optional[str] = None,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    """Students see their own entries; staff see everyone's."""

    stmt = _procedure_query(
        user, status_filter.value if status_filter else None, department_id, student_id
    )
    return [_procedure_payload(p) for p in session.execute(stmt).scalars()]


EXPORT_COLUMNS = ("Date", "Patient ID", "Procedure", "Department", "Supervisor", "Status")


@app.get("/api/procedures/export", response_model=None)
def export_procedures(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Response:
    """Return the caller's logbook as CSV."""

    rows = session.execute(
        select(Procedure, Department.name)
        .outerjoin(Department, Department.id == Procedure.department_id)
        .where(Procedure.student_id == user["sub"])
        .order_by(Procedure.procedure_date.desc())
    ).all()
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for proc, department_name in rows:
        writer.writerow(
            [
                proc.procedure_date.isoformat(),
                proc.patient_op_number or "",
                proc.procedure_type,
                department_name or "",
                proc.supervisor_name,
                proc.status.capitalize(),
            ]
        )
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="logbook.csv"'},
    )


def _owned_procedure(session: Session, procedure_id: str, user_id: str) -> Procedure:
    proc = _get_or_404(session, Procedure, procedure_id, "Procedure")
    if proc.student_id != user_id:
        raise _error(403, "Not your procedure", "FORBIDDEN")
    return proc


@app.patch("/api/procedures/{procedure_id}")
async def update_procedure(
    procedure_id: str,
    model: DraftEditModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Edit a pending or rejected entry; the edit sends it back for review."""

    proc = _owned_procedure(session, procedure_id, user["sub"])
    if proc.status == ProcedureStatus.VERIFIED.value:
        raise _error(409, "Verified procedures cannot be edited", "LOCKED")
    form = ProcedureForm(
        department_id=proc.department_id,
        task_id=proc.quota_task_id,
        supervisor_name=proc.supervisor_name,
        procedure_date=proc.procedure_date,
        patient_name=proc.patient_name,
        patient_op_number=proc.patient_op_number,
    )
    edits = model.model_dump(exclude_unset=True)
    if "department_id" in edits and "task_id" not in edits:
        edits["task_id"] = None if edits["department_id"] != proc.department_id else proc.quota_task_id
    form.apply_edits(edits)
    _, tasks = _reference_data(session)
    task_map = {t.id: t for t in tasks}
    try:
        form.validate(task_map)
    except FormValidationError as exc:
        raise _validation_error(exc)
    proc.department_id = form.department_id
    proc.quota_task_id = form.task_id
    proc.procedure_type = task_map[form.task_id].task_name
    proc.procedure_date = form.procedure_date
    proc.supervisor_name = sanitize_text(form.supervisor_name)
    proc.patient_name = sanitize_optional(form.patient_name)
    proc.patient_op_number = sanitize_optional(form.patient_op_number)
    proc.status = ProcedureStatus.PENDING.value
    proc.rejection_reason = None
    session.commit()
    payload = _procedure_payload(proc)
    await _publish("procedures", UPDATE, payload, Audience.users(proc.student_id, staff=True))
    return payload


@app.delete("/api/procedures/{procedure_id}")
async def delete_procedure(
    procedure_id: str,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    proc = _owned_procedure(session, procedure_id, user["sub"])
    if proc.status == ProcedureStatus.VERIFIED.value:
        raise _error(409, "Verified procedures cannot be deleted", "LOCKED")
    student_id = proc.student_id
    session.delete(proc)
    session.commit()
    await _publish(
        "procedures", DELETE, {"id": procedure_id}, Audience.users(student_id, staff=True)
    )
    return {"deleted": procedure_id}


async def _review(
    session: Session,
    procedure_id: str,
    reviewer_id: str,
    new_status: ProcedureStatus,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    proc = _get_or_404(session, Procedure, procedure_id, "Procedure")
    proc.status = new_status.value
    proc.rejection_reason = reason
    when = proc.procedure_date.isoformat()
    if new_status is ProcedureStatus.VERIFIED:
        notification = create_notification(
            session,
            proc.student_id,
            "Procedure verified",
            f"Your {proc.procedure_type} from {when} was verified.",
            type="success",
            related_id=proc.id,
        )
    else:
        notification = create_notification(
            session,
            proc.student_id,
            "Procedure rejected",
            f"Your {proc.procedure_type} from {when} was rejected: {reason}",
            type="warning",
            related_id=proc.id,
        )
    session.commit()
    logger.info(
        "procedure_reviewed",
        procedure_id=proc.id,
        reviewer_id=reviewer_id,
        status=new_status.value,
    )
    payload = _procedure_payload(proc)
    await _publish("procedures", UPDATE, payload, Audience.users(proc.student_id, staff=True))
    await _publish(
        "notifications",
        INSERT,
        serialise_notification(notification),
        Audience.users(proc.student_id),
    )
    return payload


@app.post("/api/procedures/{procedure_id}/verify")
async def verify_procedure(
    procedure_id: str, user=Depends(STAFF), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    return await _review(session, procedure_id, user["sub"], ProcedureStatus.VERIFIED)


@app.post("/api/procedures/{procedure_id}/reject")
async def reject_procedure(
    procedure_id: str,
    model: RejectModel,
    user=Depends(STAFF),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    reason = sanitize_text(model.reason)
    if not reason:
        raise _error(422, "A rejection reason is required", "VALIDATION_ERROR")
    return await _review(session, procedure_id, user["sub"], ProcedureStatus.REJECTED, reason)


# ---------------------------------------------------------------------------
# Batches, users and roster import
# ---------------------------------------------------------------------------


def _member_counts(session: Session) -> Dict[str, int]:
    return dict(
        session.execute(
            select(UserBatch.batch_id, func.count(UserBatch.id)).group_by(UserBatch.batch_id)
        ).all()
    )


@app.get("/api/batches")
def get_batches(
    user=Depends(STAFF), session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    counts = _member_counts(session)
    batches = session.execute(select(Batch).order_by(Batch.name)).scalars().all()
    return [_batch_payload(b, counts.get(b.id, 0)) for b in batches]


@app.get("/api/batches/mine")
def get_my_batches(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    counts = _member_counts(session)
    batches = session.execute(
        select(Batch)
        .join(UserBatch, UserBatch.batch_id == Batch.id)
        .where(UserBatch.user_id == user["sub"])
        .order_by(Batch.name)
    ).scalars().all()
    return [_batch_payload(b, counts.get(b.id, 0)) for b in batches]


@app.post("/api/batches", status_code=201)
def create_batch(
    model: BatchModel, user=Depends(ADMIN), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    name = sanitize_text(model.name)
    if not name:
        raise _error(422, "Batch name is required", "VALIDATION_ERROR")
    batch = Batch(
        name=name,
        code=model.code,
        academic_year=model.academic_year,
        intake_label=model.intake_label,
        year_of_study=model.year_of_study,
        max_members=model.max_members,
        created_by=user["sub"],
    )
    session.add(batch)
    try:
        session.flush()
    except IntegrityError:
        raise _error(409, "Batch already exists", "DUPLICATE_BATCH")
    return _batch_payload(batch)


@app.patch("/api/batches/{batch_id}")
def update_batch(
    batch_id: str,
    model: BatchUpdateModel,
    user=Depends(ADMIN),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    batch = _get_or_404(session, Batch, batch_id, "Batch")
    for field_name, value in model.model_dump(exclude_unset=True).items():
        setattr(batch, field_name, sanitize_text(value) if isinstance(value, str) else value)
    try:
        session.flush()
    except IntegrityError:
        raise _error(409, "Batch already exists", "DUPLICATE_BATCH")
    return _batch_payload(batch, len(_batch_member_ids(session, batch.id)))


@app.delete("/api/batches/{batch_id}")
def delete_batch(
    batch_id: str, user=Depends(ADMIN), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    batch = _get_or_404(session, Batch, batch_id, "Batch")
    message_ids = select(Message.id).where(Message.batch_id == batch_id)
    session.execute(delete(MessageReaction).where(MessageReaction.message_id.in_(message_ids)))
    session.execute(delete(Message).where(Message.batch_id == batch_id))
    session.execute(delete(UserBatch).where(UserBatch.batch_id == batch_id))
    session.delete(batch)
    logger.info("batch_deleted", batch_id=batch_id, user_id=user["sub"])
    return {"deleted": batch_id}


def _batch_is_full(session: Session, batch: Batch) -> bool:
    return batch.max_members is not None and len(_batch_member_ids(session, batch.id)) >= batch.max_members


def _is_member(session: Session, user_id: str, batch_id: str) -> bool:
    return session.execute(
        select(UserBatch.id).where(UserBatch.user_id == user_id, UserBatch.batch_id == batch_id)
    ).first() is not None


def _assign_to_batch(session: Session, user_id: str, batch: Batch) -> bool:
    """Move *user_id* into *batch*; returns ``False`` if already a member."""

    if _is_member(session, user_id, batch.id):
        return False
    if _batch_is_full(session, batch):
        raise _error(409, f"Batch {batch.name} is full", "BATCH_FULL")
    session.execute(delete(UserBatch).where(UserBatch.user_id == user_id))
    session.add(UserBatch(user_id=user_id, batch_id=batch.id))
    session.flush()
    return True


@app.post("/api/batches/{batch_id}/members")
def assign_member(
    batch_id: str,
    model: MemberModel,
    user=Depends(ADMIN),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    batch = _get_or_404(session, Batch, batch_id, "Batch")
    _get_or_404(session, User, model.user_id, "User")
    assigned = _assign_to_batch(session, model.user_id, batch)
    return {"batchId": batch.id, "userId": model.user_id, "assigned": assigned}


@app.delete("/api/batches/{batch_id}/members/{member_id}")
def remove_member(
    batch_id: str,
    member_id: str,
    user=Depends(ADMIN),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    result = session.execute(
        delete(UserBatch).where(UserBatch.batch_id == batch_id, UserBatch.user_id == member_id)
    )
    if not result.rowcount:
        raise _error(404, "Membership not found", "NOT_FOUND")
    return {"batchId": batch_id, "userId": member_id, "removed": True}


@app.get("/api/admin/users")
def get_users(
    user=Depends(ADMIN), session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    users = session.execute(select(User).order_by(User.email)).scalars().all()
    memberships: Dict[str, List[Dict[str, str]]] = {}
    for user_id, batch_id, batch_name in session.execute(
        select(UserBatch.user_id, Batch.id, Batch.name).join(Batch, Batch.id == UserBatch.batch_id)
    ):
        memberships.setdefault(user_id, []).append({"id": batch_id, "name": batch_name})
    return [{**_user_payload(u), "batches": memberships.get(u.id, [])} for u in users]


@app.put("/api/admin/users/{user_id}/role")
def set_user_role(
    user_id: str,
    model: RoleModel,
    user=Depends(ADMIN),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    valid = {r.value for r in Role}
    if model.role not in valid:
        raise _error(422, f"Role must be one of {sorted(valid)}", "INVALID_ROLE")
    if user_id == user["sub"]:
        raise _error(400, "Administrators cannot change their own role", "SELF_ROLE_CHANGE")
    account = _get_or_404(session, User, user_id, "User")
    account.role = model.role
    session.flush()
    logger.info("role_changed", user_id=user_id, role=model.role, changed_by=user["sub"])
    return _user_payload(account)


@app.post("/api/admin/roster/import")
def import_roster(
    model: RosterImportModel,
    user=Depends(ADMIN),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Create student accounts from pasted roster text and assign batches.

    New accounts receive a random temporary password that is returned once.
    """

    parsed = read_roster(model.text)
    batches = {
        b.name.lower(): b for b in session.execute(select(Batch)).scalars()
    }
    results: List[Dict[str, Any]] = []
    for row in parsed.rows:
        email = row.email.strip().lower()
        batch = batches.get(row.batch.lower())
        if batch is None:
            batch = Batch(name=row.batch, created_by=user["sub"])
            session.add(batch)
            session.flush()
            batches[row.batch.lower()] = batch
        outcome: Dict[str, Any] = {"email": email, "name": row.name, "batch": batch.name}
        results.append(outcome)
        account = find_user_by_email(session, email)
        if account is not None and _is_member(session, account.id, batch.id):
            outcome.update(status="skipped", reason="already in batch")
            continue
        # Capacity is checked before any account is created.
        if _batch_is_full(session, batch):
            outcome.update(status="skipped", reason="batch full")
            continue
        if account is None:
            temporary = secrets.token_urlsafe(9)
            account = register_user(
                session, email, temporary, Role.STUDENT.value, full_name=sanitize_text(row.name)
            )
            outcome.update(status="created", temporaryPassword=temporary)
        else:
            outcome["status"] = "assigned"
        _assign_to_batch(session, account.id, batch)
    logger.info(
        "roster_imported",
        rows=len(parsed.rows),
        skipped_lines=parsed.skipped_lines,
        user_id=user["sub"],
    )
    return {"results": results, "skippedLines": parsed.skipped_lines}


# ---------------------------------------------------------------------------
# Messages and notifications
# ---------------------------------------------------------------------------


def _visible_messages(user_id: str):
    my_batches = select(UserBatch.batch_id).where(UserBatch.user_id == user_id)
    return or_(
        Message.sender_id == user_id,
        Message.recipient_id == user_id,
        Message.batch_id.in_(my_batches),
        and_(Message.batch_id.is_(None), Message.recipient_id.is_(None)),
    )


def _message_payloads(
    session: Session, messages: Iterable[Message], viewer_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    messages = list(messages)
    ids = [m.id for m in messages]
    senders = {
        u.id: u.full_name or u.email
        for u in session.execute(
            select(User).where(User.id.in_(list({m.sender_id for m in messages})))
        ).scalars()
    }
    reactions: Dict[str, Dict[str, int]] = {}
    mine: Dict[str, List[str]] = {}
    if ids:
        for reaction in session.execute(
            select(MessageReaction).where(MessageReaction.message_id.in_(ids))
        ).scalars():
            counts = reactions.setdefault(reaction.message_id, {})
            counts[reaction.reaction_type] = counts.get(reaction.reaction_type, 0) + 1
            if reaction.user_id == viewer_id:
                mine.setdefault(reaction.message_id, []).append(reaction.reaction_type)
    payloads = []
    for message in messages:
        payload = {
            "id": message.id,
            "senderId": message.sender_id,
            "senderName": senders.get(message.sender_id),
            "content": message.content,
            "batchId": message.batch_id,
            "recipientId": message.recipient_id,
            "createdAt": to_iso(message.created_at),
            "reactions": reactions.get(message.id, {}),
        }
        if viewer_id is not None:
            payload["myReactions"] = sorted(mine.get(message.id, []))
        payloads.append(payload)
    return payloads


def _message_audience(session: Session, message: Message) -> Audience:
    if message.recipient_id:
        return Audience.users(message.sender_id, message.recipient_id)
    if message.batch_id:
        return Audience.users(message.sender_id, *_batch_member_ids(session, message.batch_id))
    return Audience.all()


@app.get("/api/messages")
def get_messages(
    limit: int = Query(default=50, ge=1, le=200),
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    messages = session.execute(
        select(Message)
        .where(_visible_messages(user["sub"]))
        .order_by(Message.created_at.desc())
        .limit(limit)
    ).scalars().all()
    return _message_payloads(session, messages, user["sub"])


@app.post("/api/messages", status_code=201)
async def send_message(
    model: MessageModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Send a direct, batch or broadcast message.

    Only instructors and administrators may address a batch or everyone.
    """

    sender_id = user["sub"]
    if model.batch_id and model.recipient_id:
        raise _error(422, "Choose either a batch or a recipient", "VALIDATION_ERROR")
    if not model.recipient_id and not is_staff(user):
        raise _error(403, "Only staff can message a batch or everyone", "FORBIDDEN")
    content = sanitize_text(model.content)
    if not content:
        raise _error(422, "Message cannot be empty", "VALIDATION_ERROR")
    if model.batch_id:
        _get_or_404(session, Batch, model.batch_id, "Batch")
    recipient = _get_or_404(session, User, model.recipient_id, "Recipient") if model.recipient_id else None

    message = Message(
        sender_id=sender_id,
        content=content,
        batch_id=model.batch_id,
        recipient_id=model.recipient_id,
    )
    session.add(message)
    session.flush()
    notification = None
    if recipient is not None:
        sender = session.get(User, sender_id)
        sender_name = (sender.full_name or sender.email) if sender else "Someone"
        notification = create_notification(
            session,
            recipient.id,
            f"New message from {sender_name}",
            content[:140],
            type="message",
            related_id=message.id,
        )
    audience = _message_audience(session, message)
    session.commit()
    payload = _message_payloads(session, [message])[0]
    await _publish("messages", INSERT, payload, audience)
    if notification is not None:
        await _publish(
            "notifications",
            INSERT,
            serialise_notification(notification),
            Audience.users(notification.user_id),
        )
    return payload


@app.post("/api/messages/{message_id}/reactions")
async def toggle_reaction(
    message_id: str,
    model: ReactionModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Add the caller's reaction, or remove it if already present."""

    user_id = user["sub"]
    message = session.execute(
        select(Message).where(Message.id == message_id, _visible_messages(user_id))
    ).scalar_one_or_none()
    if message is None:
        raise _error(404, "Message not found", "NOT_FOUND")
    existing = session.execute(
        select(MessageReaction).where(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
            MessageReaction.reaction_type == model.reaction_type,
        )
    ).scalar_one_or_none()
    if existing is None:
        session.add(
            MessageReaction(message_id=message_id, user_id=user_id, reaction_type=model.reaction_type)
        )
        active = True
    else:
        session.delete(existing)
        active = False
    session.flush()
    audience = _message_audience(session, message)
    session.commit()
    payload = _message_payloads(session, [message])[0]
    await _publish("messages", UPDATE, payload, audience)
    return {"active": active, "reactions": payload["reactions"]}


@app.get("/api/notifications")
def get_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    return list_notifications(session, user["sub"], limit=limit, offset=offset)


@app.post("/api/notifications/{notification_id}/read")
async def read_notification(
    notification_id: str,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    try:
        notification = mark_read(session, user["sub"], notification_id)
    except NotificationNotFoundError:
        raise _error(404, "Notification not found", "NOT_FOUND")
    session.commit()
    payload = serialise_notification(notification)
    await _publish("notifications", UPDATE, payload, Audience.users(user["sub"]))
    return payload


@app.post("/api/notifications/read-all")
def read_all_notifications(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, int]:
    return {"updated": mark_all_read(session, user["sub"])}


# ---------------------------------------------------------------------------
# Gamification and analytics
# ---------------------------------------------------------------------------


@app.get("/api/gamification/summary")
def gamification_summary(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    return gamification.summary(session, user["sub"])


@app.get("/api/analytics/progress")
def analytics_progress(
    student_id: Optional[str] = None,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> List[Dict[str, Any]]:
    target = student_id if student_id and is_staff(user) else user["sub"]
    return analytics.department_progress(session, target)


@app.get("/api/analytics/risk-radar")
def analytics_risk_radar(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    return analytics.risk_radar(session, user["sub"])


@app.get("/api/analytics/batches")
def analytics_batches(
    user=Depends(STAFF), session: Session = Depends(get_session)
) -> List[Dict[str, Any]]:
    return analytics.batch_stats(session)


@app.get("/api/analytics/batch-comparison")
def analytics_batch_comparison(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    return analytics.batch_comparison(session, user["sub"])


# ---------------------------------------------------------------------------
# Themes
# ---------------------------------------------------------------------------


def _profile_for(session: Session, user_id: str) -> Profile:
    profile = session.get(Profile, user_id)
    if profile is None:
        _get_or_404(session, User, user_id, "User")
        profile = Profile(user_id=user_id)
        session.add(profile)
        session.flush()
    return profile


def _theme_payload(profile: Profile) -> Dict[str, Any]:
    return themes.resolve_palette(
        profile.theme_preset,
        profile.custom_primary_hsl,
        profile.custom_secondary_hsl,
        profile.custom_accent_hsl,
    )


@app.get("/api/themes")
def get_themes() -> List[Dict[str, str]]:
    return themes.list_presets()


@app.get("/api/profile/theme")
def get_profile_theme(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    return _theme_payload(_profile_for(session, user["sub"]))


@app.put("/api/profile/theme")
def save_profile_theme(
    model: ThemeModel,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    try:
        preset = themes.validate_preset(model.preset)
        primary = themes.normalise_hsl(model.primary)
        secondary = themes.normalise_hsl(model.secondary)
        accent = themes.normalise_hsl(model.accent)
    except themes.ThemeError as exc:
        raise _error(422, str(exc), "INVALID_THEME")
    profile = _profile_for(session, user["sub"])
    profile.theme_preset = preset
    profile.custom_primary_hsl = primary
    profile.custom_secondary_hsl = secondary
    profile.custom_accent_hsl = accent
    session.flush()
    return _theme_payload(profile)


@app.delete("/api/profile/theme")
def reset_profile_theme(
    user=Depends(get_current_user), session: Session = Depends(get_session)
) -> Dict[str, Any]:
    profile = _profile_for(session, user["sub"])
    profile.theme_preset = themes.DEFAULT_PRESET
    profile.custom_primary_hsl = None
    profile.custom_secondary_hsl = None
    profile.custom_accent_hsl = None
    session.flush()
    return _theme_payload(profile)


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


@app.websocket("/ws/changes")
async def changes_ws(websocket: WebSocket):
    try:
        claims = await ws_authenticate(websocket)
    except WebSocketDisconnect:
        return
    await change_feed.handle(websocket, claims["sub"], claims.get("role"))


def run() -> None:  # pragma: no cover - console entry point
    import uvicorn

    uvicorn.run(
        "logbook.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


__all__ = ["app", "capture_registry", "change_feed"]
