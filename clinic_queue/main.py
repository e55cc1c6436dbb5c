"""FastAPI application exposing the clinic queue API."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from clinic_queue.auth import (
    TOKEN_TYPE_TV,
    authenticate_user,
    create_access_token,
    create_tv_token,
    decode_token,
    extract_websocket_token,
    hash_password,
    register_user,
    verify_password,
)
from clinic_queue.config import get_settings
from clinic_queue.db.models import User
from clinic_queue.db.session import session_scope
from clinic_queue.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    QueueError,
    ValidationError,
)
from clinic_queue.observability import REQUEST_COUNTER, REQUEST_LATENCY, configure_logging
from clinic_queue.runtime import QueueRuntime
from clinic_queue.schemas import (
    BulkSettingsModel,
    ChangePasswordModel,
    ClearOldCompletedModel,
    LoginModel,
    PatientCreateModel,
    PatientStatusModel,
    SettingValueModel,
    UserCreateModel,
    WindowCreateModel,
    WindowPatientModel,
    serialize_user,
)
from clinic_queue.storage import QueueStorage
from clinic_queue.tenancy import TenantId, tenant_id
from clinic_queue.ws_queue import ROLE_DISPLAY, ROLE_STAFF

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)

NO_STORE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache"}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_runtime(request: Request) -> QueueRuntime:
    return request.app.state.runtime


def get_session(runtime: QueueRuntime = Depends(get_runtime)) -> Iterator[Session]:
    """Yield a request-scoped session; the service commits its own writes."""

    session: Session = runtime.session_factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_storage(session: Session = Depends(get_session)) -> QueueStorage:
    return QueueStorage(session)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    runtime: QueueRuntime = Depends(get_runtime),
    storage: QueueStorage = Depends(get_storage),
) -> User:
    """Decode the bearer token and load the active account behind it."""

    if credentials is None:
        raise AuthenticationError("Not authenticated")
    data = decode_token(credentials.credentials, runtime.settings.jwt_secret)
    user = storage.get_user(tenant_id(data["tenant"]))
    if user is None or not user.is_active:
        raise AuthenticationError("Session inactive")
    return user


def get_current_tenant(user: User = Depends(get_current_user)) -> TenantId:
    return TenantId(user.id)


def require_role(role: str):
    """Dependency factory ensuring the current user has a given role."""

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role != role and user.role != "admin":
            raise PermissionDeniedError("Insufficient privileges")
        return user

    return checker


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(runtime: Optional[QueueRuntime] = None, *, background: bool = True) -> FastAPI:
    """Build the API.  Without ``runtime`` one is assembled from the environment at startup."""

    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("lifespan_startup")
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = QueueRuntime.from_environment()
        active: QueueRuntime = app.state.runtime
        await active.start(background=background)
        start_ts = time.time()
        try:
            yield
        finally:
            await active.stop()
            logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)

    app = FastAPI(title="Clinic Queue API", lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):
        """Attach or propagate a trace identifier for each request."""

        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            if response is not None:
                response.headers["X-Trace-Id"] = trace_id
            unbind_contextvars("trace_id", "path", "method")

    @app.middleware("http")
    async def track_http_metrics(request: Request, call_next):
        start = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            REQUEST_COUNTER.labels(request.method, path, status_code).inc()
            REQUEST_LATENCY.labels(request.method, path).observe(time.perf_counter() - start)

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("queue_error", path=request.url.path, error=exc.message)
        return _error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        response = _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
        for key, value in (exc.headers or {}).items():
            response.headers[key] = value
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        return _error_response(status.HTTP_400_BAD_REQUEST, "validation_error", message)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("database_error", path=request.url.path)
        return _error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE, "storage_unavailable", "Storage temporarily unavailable"
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error"
        )

    _register_system_routes(app)
    _register_auth_routes(app)
    _register_patient_routes(app)
    _register_window_routes(app)
    _register_dashboard_routes(app)
    _register_settings_routes(app)
    _register_tv_routes(app)
    _register_websocket(app)
    return app


def _register_system_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health(runtime: QueueRuntime = Depends(get_runtime)) -> Dict[str, Any]:
        return {
            "status": "ok",
            "connections": runtime.hub.connection_count(),
            "cache": runtime.cache.stats(),
            "pendingInvalidations": runtime.invalidator.pending_count(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/version")
    async def version(runtime: QueueRuntime = Depends(get_runtime)) -> JSONResponse:
        return JSONResponse({"version": runtime.settings.version}, headers=NO_STORE_HEADERS)

    @app.post("/api/system/force-refresh")
    async def force_refresh(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
    ) -> Dict[str, Any]:
        delivered = await runtime.service.force_refresh(tenant)
        return {"success": True, "clients": delivered}


def _register_auth_routes(app: FastAPI) -> None:
    @app.post("/api/auth/login")
    async def login(
        model: LoginModel,
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        user = authenticate_user(storage, model.username, model.password)
        if user is None:
            logger.info("login_failed", username=model.username)
            raise AuthenticationError("Invalid username or password")
        token = create_access_token(
            user, runtime.settings.jwt_secret, expires_minutes=runtime.settings.access_token_expire_minutes
        )
        logger.info("login_succeeded", tenant_id=user.id)
        return {"access_token": token, "token_type": "bearer", "user": serialize_user(user)}

    @app.get("/api/auth/me")
    async def me(user: User = Depends(get_current_user)) -> Dict[str, Any]:
        return serialize_user(user)

    @app.post("/api/auth/change-password")
    async def change_password(
        model: ChangePasswordModel,
        user: User = Depends(get_current_user),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        if not verify_password(model.currentPassword, user.password_hash):
            raise ValidationError("Current password is incorrect")
        user.password_hash = hash_password(model.newPassword)
        storage.commit()
        return {"success": True}

    @app.get("/api/users")
    async def list_users(
        _admin: User = Depends(require_role("admin")),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return [serialize_user(user) for user in storage.list_users()]

    @app.post("/api/users", status_code=status.HTTP_201_CREATED)
    async def create_user(
        model: UserCreateModel,
        _admin: User = Depends(require_role("admin")),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        if storage.get_user_by_username(model.username.strip()) is not None:
            raise ConflictError("Username already exists")
        user = register_user(storage, model.username, model.password, model.role)
        storage.commit()
        logger.info("user_created", tenant_id=user.id, role=user.role)
        return serialize_user(user)

    @app.patch("/api/users/{user_id}/status")
    async def toggle_user_status(
        user_id: str,
        admin: User = Depends(require_role("admin")),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        if user_id == admin.id:
            raise ValidationError("You cannot deactivate your own account")
        user = storage.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.is_active = not user.is_active
        storage.commit()
        if not user.is_active:
            await runtime.service.disconnect_tenant(TenantId(user.id))
        return serialize_user(user)

    @app.delete("/api/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(
        user_id: str,
        admin: User = Depends(require_role("admin")),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Response:
        if user_id == admin.id:
            raise ValidationError("You cannot delete your own account")
        await runtime.service.delete_tenant(storage, TenantId(user_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/users/me/tv-token")
    async def tv_token(
        request: Request,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
    ) -> Dict[str, str]:
        token = create_tv_token(tenant, runtime.settings.jwt_secret)
        return {"tvToken": token, "tvUrl": str(request.base_url).rstrip("/") + f"/tv/{token}"}


def _register_patient_routes(app: FastAPI) -> None:
    @app.get("/api/patients")
    async def list_patients(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.list_patients(storage, tenant)

    @app.post("/api/patients", status_code=status.HTTP_201_CREATED)
    async def create_patient(
        model: PatientCreateModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.create_patient(
            storage, tenant, name=model.name, number=model.number, is_priority=model.isPriority
        )

    @app.get("/api/patients/active")
    async def active_patients(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.active_patients(storage, tenant)

    @app.get("/api/patients/tv")
    async def tv_patients(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.tv_patients(storage, tenant)

    @app.get("/api/patients/today")
    async def today_patients(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.today_patients(storage, tenant)

    @app.get("/api/patients/next-number")
    async def next_number(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, int]:
        return {"nextNumber": runtime.service.next_number(storage, tenant)}

    @app.patch("/api/patients/{patient_id}/status")
    async def update_patient_status(
        patient_id: str,
        model: PatientStatusModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.update_status(
            storage,
            tenant,
            patient_id,
            model.status,
            window_id=model.windowId,
            reason=model.requeueReason,
        )

    @app.patch("/api/patients/{patient_id}/priority")
    async def toggle_patient_priority(
        patient_id: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.toggle_priority(storage, tenant, patient_id)

    @app.delete("/api/patients/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_patient(
        patient_id: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Response:
        await runtime.service.delete_patient(storage, tenant, patient_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/patients/auto-complete-dispensary")
    async def auto_complete_dispensary(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
    ) -> Dict[str, Any]:
        completed = await runtime.sweeper.run_for_tenant(tenant)
        if completed is None:
            return {"success": True, "completedCount": 0, "patients": [], "skipped": True}
        return {
            "success": True,
            "completedCount": len(completed),
            "patients": [item["id"] for item in completed],
        }

    @app.post("/api/patients/reset-queue")
    async def reset_queue(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        counts = await runtime.service.reset_queue(storage, tenant)
        return {
            "success": True,
            "deletedCount": counts["today"] + counts["completed"],
            "todayDeleted": counts["today"],
            "completedDeleted": counts["completed"],
        }

    @app.post("/api/patients/clear-completed")
    async def clear_completed(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        deleted = await runtime.service.clear_completed(storage, tenant)
        return {"success": True, "deletedCount": deleted}

    @app.post("/api/patients/clear-old-completed")
    async def clear_old_completed(
        model: Optional[ClearOldCompletedModel] = None,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        hours = (model or ClearOldCompletedModel()).hoursOld
        deleted = await runtime.service.clear_completed(storage, tenant, hours_old=hours)
        return {"success": True, "deletedCount": deleted, "hoursOld": hours}


def _register_window_routes(app: FastAPI) -> None:
    @app.get("/api/windows")
    async def list_windows(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.list_windows(storage, tenant)

    @app.post("/api/windows", status_code=status.HTTP_201_CREATED)
    async def create_window(
        model: WindowCreateModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.create_window(storage, tenant, model.name)

    @app.put("/api/windows/{window_id}")
    async def rename_window(
        window_id: str,
        model: WindowCreateModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.rename_window(storage, tenant, window_id, model.name)

    @app.delete("/api/windows/{window_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_window(
        window_id: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Response:
        await runtime.service.delete_window(storage, tenant, window_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.patch("/api/windows/{window_id}/status")
    async def toggle_window(
        window_id: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.toggle_window(storage, tenant, window_id)

    @app.patch("/api/windows/{window_id}/patient")
    async def assign_window_patient(
        window_id: str,
        model: WindowPatientModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.assign_window_patient(storage, tenant, window_id, model.patientId)


def _register_dashboard_routes(app: FastAPI) -> None:
    @app.get("/api/dashboard/stats")
    async def dashboard_stats(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, int]:
        return runtime.service.dashboard_stats(storage, tenant)

    @app.get("/api/dashboard/current-call")
    async def current_call(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Optional[Dict[str, Any]]:
        return runtime.service.current_call(storage, tenant)

    @app.get("/api/dashboard/history")
    async def call_history(
        limit: int = Query(5),
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.call_history(storage, tenant, limit)


def _register_settings_routes(app: FastAPI) -> None:
    @app.get("/api/settings")
    async def all_settings(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.all_settings(storage, tenant)

    @app.put("/api/settings")
    async def bulk_update_settings(
        model: BulkSettingsModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        saved = await runtime.service.put_settings_bulk(
            storage, tenant, [item.model_dump() for item in model.settings]
        )
        return {"success": True, "settings": saved}

    @app.get("/api/settings/tv")
    async def tv_settings(
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return runtime.service.tv_settings(storage, tenant)

    @app.get("/api/settings/category/{category}")
    async def settings_by_category(
        category: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        return runtime.service.settings_by_category(storage, tenant, category)

    @app.get("/api/settings/{key}")
    async def get_setting(
        key: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return runtime.service.get_setting(storage, tenant, key)

    @app.put("/api/settings/{key}")
    async def put_setting(
        key: str,
        model: SettingValueModel,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        return await runtime.service.put_setting(storage, tenant, key, model.value, model.category)

    @app.delete("/api/settings/{key}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_setting(
        key: str,
        tenant: TenantId = Depends(get_current_tenant),
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Response:
        await runtime.service.delete_setting(storage, tenant, key)
        return Response(status_code=status.HTTP_204_NO_CONTENT)


def _display_tenant(
    token: str, runtime: QueueRuntime, storage: QueueStorage, *, report_inactive: bool = False
) -> User:
    try:
        data = decode_token(token, runtime.settings.jwt_secret, TOKEN_TYPE_TV)
    except AuthenticationError:
        raise NotFoundError("Display not found")
    user = storage.get_user(tenant_id(data["tenant"]))
    if user is None:
        raise NotFoundError("Display not found")
    if not user.is_active:
        if report_inactive:
            raise PermissionDeniedError("Clinic account is inactive")
        raise NotFoundError("Display not found")
    return user


def _register_tv_routes(app: FastAPI) -> None:
    @app.get("/api/tv/{token}")
    async def tv_clinic(
        token: str,
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        user = _display_tenant(token, runtime, storage, report_inactive=True)
        name = storage.get_setting(TenantId(user.id), "clinicName")
        return {
            "clinicId": user.id,
            "username": user.username,
            "clinicName": name.value if name is not None else None,
        }

    @app.get("/api/tv/{token}/patients")
    async def tv_clinic_patients(
        token: str,
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> List[Dict[str, Any]]:
        user = _display_tenant(token, runtime, storage)
        return runtime.service.tv_patients(storage, TenantId(user.id))

    @app.get("/api/tv/{token}/settings")
    async def tv_clinic_settings(
        token: str,
        runtime: QueueRuntime = Depends(get_runtime),
        storage: QueueStorage = Depends(get_storage),
    ) -> Dict[str, Any]:
        user = _display_tenant(token, runtime, storage)
        return runtime.service.tv_settings(storage, TenantId(user.id))


def _staff_tenant(runtime: QueueRuntime, token: str) -> Optional[TenantId]:
    try:
        data = decode_token(token, runtime.settings.jwt_secret)
    except AuthenticationError:
        return None
    with session_scope(runtime.session_factory) as session:
        user = session.get(User, tenant_id(data["tenant"]))
        if user is None or not user.is_active:
            return None
        return TenantId(user.id)


def _register_websocket(app: FastAPI) -> None:
    @app.websocket("/ws")
    async def queue_websocket(websocket: WebSocket) -> None:
        runtime: QueueRuntime = websocket.app.state.runtime
        token, subprotocol = extract_websocket_token(websocket)
        tv_token = websocket.query_params.get("tv_token")
        tenant: Optional[TenantId] = None
        role: Optional[str] = None
        if token:
            tenant = _staff_tenant(runtime, token)
            role = ROLE_STAFF
        elif tv_token:
            tenant = runtime.resolve_display_token(tv_token)
            role = ROLE_DISPLAY
        if role is not None and tenant is None:
            logger.info("queue_ws_rejected", role=role)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await runtime.hub.handle(websocket, tenant, role=role, subprotocol=subprotocol)


app = create_app()
