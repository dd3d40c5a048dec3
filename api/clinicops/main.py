from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, Security, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from clinicops.core.config import settings
from clinicops.core.errors import ClinicOpsError, InvalidInput, Unauthenticated
from clinicops.db.session import get_db
from clinicops.logging_utils import (
    _request_id_ctx_var,
    _tenant_id_ctx_var,
    configure_logging,
    get_current_tenant,
    set_tenant_context,
    set_user_context,
)
from clinicops.models import Appointment, Patient, User
from clinicops.services.credentials import authenticate
from clinicops.services.gateway import ReadGateway, WriteGateway
from clinicops.services.notifications import (
    NotificationHandoff,
    NotificationPort,
    get_notification_port,
)
from clinicops.services.policy import Action, authorize
from clinicops.services.scope import ScopeHandle, resolve
from clinicops.services.tokens import issue_token, verify_token

configure_logging()

app = FastAPI(title=settings.app_name, version="0.1.0")

logger = logging.getLogger(__name__)

REQUEST_COUNTER = Counter(
    "clinicops_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status", "tenant"],
)
REQUEST_LATENCY = Histogram(
    "clinicops_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)

_bearer_scheme = HTTPBearer(auto_error=False)


class SimpleRateLimiter:
    """In-memory rate limiter keyed by client IP."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._last_prune = clock()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.window_seconds:
            return
        self._entries = {
            key: entry
            for key, entry in self._entries.items()
            if now - entry[1] < self.window_seconds
        }
        self._last_prune = now

    async def allow(self, key: str) -> bool:
        now = self._clock()
        async with self._lock:
            self._prune(now)
            count, window_start = self._entries.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                self._entries[key] = (1, now)
                return True
            if count >= self.limit:
                return False
            self._entries[key] = (count + 1, window_start)
            return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id and expose it to logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        request.state.request_id = request_id
        request_id_token = _request_id_ctx_var.set(request_id)
        tenant_token = _tenant_id_ctx_var.set(None)

        try:
            response = await call_next(request)
        finally:
            _request_id_ctx_var.reset(request_id_token)
            _tenant_id_ctx_var.reset(tenant_token)

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply a coarse rate limit per client IP."""

    def __init__(self, app: FastAPI, limiter: SimpleRateLimiter) -> None:  # type: ignore[override]
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.method == "OPTIONS":
            return await call_next(request)

        client_host = request.client.host if request.client else "unknown"
        allowed = await self.limiter.allow(client_host)
        if not allowed:
            logger.warning("rate limit exceeded", extra={"client_ip": client_host})
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"kind": "RateLimited", "detail": "Rate limit exceeded"},
            )

        return await call_next(request)


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _tenant_label(request: Request) -> str:
    return getattr(request.state, "tenant_id", None) or get_current_tenant()


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs and feed metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start_time = time.perf_counter()
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - start_time
            path = _route_label(request)
            REQUEST_COUNTER.labels(
                method=method, path=path, status="500", tenant=_tenant_label(request)
            ).inc()
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            raise

        elapsed = time.perf_counter() - start_time
        path = _route_label(request)
        status_code = response.status_code

        REQUEST_COUNTER.labels(
            method=method,
            path=path,
            status=str(status_code),
            tenant=_tenant_label(request),
        ).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        logger.info(
            "request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )

        return response


rate_limiter = SimpleRateLimiter(
    settings.rate_limit_requests, settings.rate_limit_window_seconds
)


app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(AccessLogMiddleware)


@app.exception_handler(ClinicOpsError)
async def clinicops_error_handler(request: Request, exc: ClinicOpsError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(status_code=exc.status_code, content=exc.as_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for problem in exc.errors():
        if problem.get("type") == "json_invalid":
            problems.append("Request body is not valid JSON")
            continue
        # Integer parts are JSON byte offsets or list indexes, not field names.
        location = ".".join(
            part for part in problem.get("loc", ()) if isinstance(part, str) and part != "body"
        )
        message = str(problem.get("msg"))
        problems.append(f"{location}: {message}" if location else message)
    error = InvalidInput("; ".join(problems) or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.as_payload())


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


BodyT = TypeVar("BodyT", bound=BaseModel)


class LoginRequest(CamelModel):
    username: str
    password: str
    tenant_id: UUID | None = None


class PatientCreate(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    primary_branch_id: UUID | None = None


class AppointmentCreate(CamelModel):
    patient_id: UUID
    branch_id: UUID
    start_at: datetime


class UserCreate(CamelModel):
    username: str | None = None
    password: str | None = None
    role: str | None = None


class RoleAssignment(CamelModel):
    role: str | None = None


class BranchAssociation(CamelModel):
    branch_id: UUID


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def serialize_patient(patient: Patient) -> dict[str, Any]:
    return {
        "id": str(patient.id),
        "firstName": patient.first_name,
        "lastName": patient.last_name,
        "phoneNumber": patient.phone_number,
        "primaryBranchId": str(patient.primary_branch_id) if patient.primary_branch_id else None,
        "createdAt": _iso(patient.created_at),
    }


def serialize_appointment(appointment: Appointment) -> dict[str, Any]:
    return {
        "id": str(appointment.id),
        "patientId": str(appointment.patient_id),
        "branchId": str(appointment.branch_id),
        "startAt": _iso(appointment.start_at),
        "createdAt": _iso(appointment.created_at),
    }


def serialize_user(user: User, branch_ids: list[UUID] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": str(user.id),
        "username": user.username,
        "role": user.role.value,
        "tenantId": str(user.tenant_id),
    }
    if branch_ids is not None:
        payload["branchIds"] = [str(branch_id) for branch_id in branch_ids]
    return payload


async def require_scope(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
) -> ScopeHandle:
    """Verify the bearer token and resolve the caller's tenant scope."""

    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Authentication token is missing")

    claims = verify_token(credentials.credentials)
    if claims is None:
        raise Unauthenticated("Invalid or expired token")

    scope = resolve(claims)
    request.state.tenant_id = str(scope.tenant_id)
    set_tenant_context(scope.tenant_id)
    set_user_context(scope.user_id)
    return scope


def permit(action: Action):
    """Dependency factory rejecting callers whose role lacks ``action``."""

    async def dependency(scope: ScopeHandle = Depends(require_scope)) -> ScopeHandle:
        authorize(scope, action)
        return scope

    return dependency


def json_body(model: type[BodyT]):
    """Dependency factory parsing the request body as ``model``.

    Routes declare it after their ``permit`` dependency. The body is only
    read once the caller is authenticated and authorized, so a malformed
    payload never masks a 401 or 403.
    """

    async def dependency(
        request: Request, _scope: ScopeHandle = Depends(require_scope)
    ) -> BodyT:
        try:
            return model.model_validate_json(await request.body())
        except ValidationError as exc:
            raise RequestValidationError(exc.errors(include_url=False)) from None

    return dependency


def notification_port() -> NotificationPort:
    return get_notification_port()


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by infrastructure probes."""

    return {"status": "ok"}


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> dict[str, str]:
    """Exchange a username and password for a bearer token."""

    user = authenticate(db, payload.username, payload.password, tenant_id=payload.tenant_id)
    if user is None:
        raise Unauthenticated("Invalid username or password")

    set_tenant_context(user.tenant_id)
    logger.info("login succeeded", extra={"login_user_id": str(user.id)})
    return {"token": issue_token(user)}


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
def create_patient(
    response: Response,
    scope: ScopeHandle = Depends(permit(Action.CREATE_PATIENT)),
    payload: PatientCreate = Depends(json_body(PatientCreate)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Register a patient in the caller's tenant."""

    patient = WriteGateway(db, scope).create_patient(
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone_number=payload.phone_number,
        primary_branch_id=payload.primary_branch_id,
    )
    response.headers["Location"] = f"/api/patients/{patient.id}"
    return serialize_patient(patient)


@app.get("/api/patients")
def list_patients(
    branch_id: UUID | None = Query(default=None, alias="branchId"),
    scope: ScopeHandle = Depends(permit(Action.LIST_PATIENTS)),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List the caller's patients, newest first."""

    patients = ReadGateway(db, scope).list_patients(branch_id)
    return [serialize_patient(patient) for patient in patients]


@app.get("/api/patients/{patient_id}")
def get_patient(
    patient_id: UUID,
    scope: ScopeHandle = Depends(permit(Action.VIEW_PATIENT)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return serialize_patient(ReadGateway(db, scope).get_patient(patient_id))


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
def create_appointment(
    response: Response,
    background_tasks: BackgroundTasks,
    scope: ScopeHandle = Depends(permit(Action.CREATE_APPOINTMENT)),
    payload: AppointmentCreate = Depends(json_body(AppointmentCreate)),
    db: Session = Depends(get_db),
    port: NotificationPort = Depends(notification_port),
) -> dict[str, Any]:
    """Book an appointment and announce it once committed."""

    gateway = WriteGateway(db, scope, notifications=NotificationHandoff(port, background_tasks))
    appointment = gateway.create_appointment(
        patient_id=payload.patient_id,
        branch_id=payload.branch_id,
        start_at=payload.start_at,
    )
    response.headers["Location"] = f"/api/appointments/{appointment.id}"
    return serialize_appointment(appointment)


@app.get("/api/appointments")
def list_appointments(
    branch_id: UUID | None = Query(default=None, alias="branchId"),
    scope: ScopeHandle = Depends(permit(Action.LIST_APPOINTMENTS)),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List the caller's appointments, newest first."""

    appointments = ReadGateway(db, scope).list_appointments(branch_id)
    return [serialize_appointment(appointment) for appointment in appointments]


@app.get("/api/users")
def list_users(
    scope: ScopeHandle = Depends(permit(Action.LIST_USERS)),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return [
        serialize_user(user, branch_ids)
        for user, branch_ids in ReadGateway(db, scope).list_users()
    ]


@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def create_user(
    response: Response,
    scope: ScopeHandle = Depends(permit(Action.CREATE_USER)),
    payload: UserCreate = Depends(json_body(UserCreate)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create a staff account in the caller's tenant (Admin only)."""

    user = WriteGateway(db, scope).create_user(
        username=payload.username,
        password=payload.password,
        role=payload.role,
    )
    response.headers["Location"] = f"/api/users/{user.id}"
    return serialize_user(user)


@app.put("/api/users/{user_id}/role")
def assign_role(
    user_id: UUID,
    scope: ScopeHandle = Depends(permit(Action.ASSIGN_ROLE)),
    payload: RoleAssignment = Depends(json_body(RoleAssignment)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    user = WriteGateway(db, scope).assign_role(user_id=user_id, role=payload.role)
    return serialize_user(user)


@app.post("/api/users/{user_id}/branches")
def associate_branch(
    user_id: UUID,
    scope: ScopeHandle = Depends(permit(Action.ASSOCIATE_USER_BRANCH)),
    payload: BranchAssociation = Depends(json_body(BranchAssociation)),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    link = WriteGateway(db, scope).associate_branch(user_id=user_id, branch_id=payload.branch_id)
    return {
        "message": "Branch associated successfully",
        "userId": str(link.user_id),
        "branchId": str(link.branch_id),
    }
