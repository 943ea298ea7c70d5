import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.deps import get_rental_db
from db.session import init_db
from models.enums import Department, ItemStatus, UserRole
from schemas.auth import AuthLoginRequest
from schemas.emails import EmailPreviewRequest, ReminderSendRequest
from schemas.items import ItemCreate, ItemUpdate
from schemas.rentals import ApprovalDecisionRequest, CreateRentalDto, ExtensionRequest
from services import email_service, item_service, rental_service
from services.audit_service import log_audit
from services.errors import RecordNotFoundError, WorkflowError
from services.notification_service import (
    dispatch_new_notifications,
    dispatch_pending_notifications,
    list_pending_notifications,
    pending_notification_ids,
    serialize_notification,
)
from services.user_access_service import (
    create_session,
    get_session,
    remove_session,
    requires_password,
    session_payload_for,
    upsert_user,
    verify_admin_password,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield


app = FastAPI(lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5000,http://localhost:5000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="rental_tracker_session",
        same_site="lax",
        https_only=False,
    )

AUTH_LOGGER = logging.getLogger("rental_tracker.auth")
DEFAULT_REMINDER_DAYS = int(os.environ.get("REMINDER_DAYS") or "3")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# Auth


@app.post("/api/auth/login")
def auth_login(payload: AuthLoginRequest, request: Request, db: Session = Depends(get_rental_db)):
    user_id = payload.userId.strip()
    name = payload.name.strip()
    if not user_id or not name:
        raise HTTPException(status_code=400, detail="userId and name are required.")
    try:
        department = Department.parse(payload.department)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if requires_password(department) and not verify_admin_password(payload.password):
        AUTH_LOGGER.warning("Login failed user_id=%s reason=invalid_admin_password", user_id)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    user = upsert_user(db, user_id, name, department, payload.email)
    session_payload = session_payload_for(user)
    token = create_session(session_payload)
    if "session" in request.scope:
        request.session["user"] = dict(session_payload)
    AUTH_LOGGER.info("Login success user_id=%s role=%s", user.UserID, user.Role)
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    if "session" in request.scope:
        request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


# Items


@app.get("/api/items")
def get_items(db: Session = Depends(get_rental_db)):
    return [item_service.serialize_item(item) for item in item_service.list_items(db)]


@app.get("/api/items/available")
def get_available_items(db: Session = Depends(get_rental_db)):
    items = item_service.list_items(db, status=ItemStatus.AVAILABLE)
    return [item_service.serialize_item(item) for item in items]


@app.get("/api/items/category/{category}")
def get_items_by_category(category: str, db: Session = Depends(get_rental_db)):
    try:
        items = item_service.list_items(db, category=category)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [item_service.serialize_item(item) for item in items]


@app.get("/api/items/{item_id}")
def get_item(item_id: int, db: Session = Depends(get_rental_db)):
    try:
        item = item_service.get_item(db, item_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return item_service.serialize_item(item)


@app.post("/api/items", status_code=201)
def create_item(
    request: Request,
    payload: ItemCreate,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    try:
        item = item_service.create_item(
            db,
            category=payload.category,
            name=payload.name,
            model=payload.model,
            serial_number=payload.serialNumber,
            status=payload.status,
            note=payload.note,
            created_by=session.get("userId"),
        )
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Item", item.ItemID, "CreateItem", item.Name, user_id=session.get("userId"))
    db.commit()
    return item_service.serialize_item(item)


@app.put("/api/items/{item_id}")
def update_item(
    request: Request,
    item_id: int,
    payload: ItemUpdate,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    try:
        item = item_service.update_item(db, item_id, payload.model_dump(exclude_unset=True))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Item", item.ItemID, "UpdateItem", None, user_id=session.get("userId"))
    db.commit()
    return item_service.serialize_item(item)


@app.delete("/api/items/{item_id}", status_code=204)
def delete_item(
    request: Request,
    item_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    try:
        item_service.delete_item(db, item_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Item", item_id, "DeleteItem", None, user_id=session.get("userId"))
    db.commit()
    return Response(status_code=204)


# Rentals


@app.get("/api/rentals")
def get_rentals(db: Session = Depends(get_rental_db)):
    return [rental_service.serialize_rental(rental) for rental in rental_service.list_rentals(db)]


@app.get("/api/rentals/user/{user_id}")
def get_rentals_for_user(user_id: str, db: Session = Depends(get_rental_db)):
    return [rental_service.serialize_rental(rental) for rental in rental_service.list_rentals_for_user(db, user_id)]


@app.get("/api/rentals/pending")
def get_pending_rentals(db: Session = Depends(get_rental_db)):
    return [rental_service.serialize_rental(rental) for rental in rental_service.list_pending_rentals(db)]


@app.get("/api/rentals/overdue")
def get_overdue_rentals(db: Session = Depends(get_rental_db)):
    return [
        rental_service.serialize_rental(rental, {"daysOverdue": days})
        for rental, days in rental_service.list_overdue_rentals(db)
    ]


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_rental_db)):
    try:
        rental = rental_service.get_rental(db, rental_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rental_service.serialize_rental(rental)


@app.post("/api/rentals", status_code=201)
def create_rental(
    request: Request,
    payload: CreateRentalDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _get_active_session(request, x_session_token)
    user_id = str(session.get("userId")) if session else (payload.userId or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required.")
    pending_before = pending_notification_ids(db)
    try:
        rental = rental_service.create_rental(db, payload.itemId, user_id, payload.expectedReturnDate)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    dispatch_new_notifications(db, pending_before)
    return rental_service.serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/return")
def return_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, x_session_token)
    try:
        _require_owner_or_admin(session, rental_service.get_rental(db, rental_id))
        rental = rental_service.return_rental(db, rental_id, returned_by=session.get("userId"))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rental_service.serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/extend")
def extend_rental(
    request: Request,
    rental_id: int,
    payload: ExtensionRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(request, x_session_token)
    try:
        _require_owner_or_admin(session, rental_service.get_rental(db, rental_id))
        rental = rental_service.extend_rental(db, rental_id, payload.newExpectedReturnDate, extended_by=session.get("userId"))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rental_service.serialize_rental(rental)


# Approvals


@app.get("/api/approvals/pending")
def get_pending_approvals(approver_id: str | None = Query(None, alias="approverId"), db: Session = Depends(get_rental_db)):
    approvals = rental_service.list_pending_approvals(db, approver_id)
    return [
        {**rental_service.serialize_approval(approval), "rental": rental_service.serialize_rental(approval.Rental)}
        for approval in approvals
    ]


@app.get("/api/approvals/rental/{rental_id}")
def get_rental_approvals(rental_id: int, db: Session = Depends(get_rental_db)):
    try:
        approvals = rental_service.list_approvals_for_rental(db, rental_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [rental_service.serialize_approval(approval) for approval in approvals]


@app.post("/api/approvals/{approval_id}/approve")
def approve_rental(
    request: Request,
    approval_id: int,
    payload: ApprovalDecisionRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    note = payload.note if payload else None
    pending_before = pending_notification_ids(db)
    try:
        approval = rental_service.approve(db, approval_id, note, decided_by=session.get("userId"))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    dispatch_new_notifications(db, pending_before)
    return rental_service.serialize_approval(approval)


@app.post("/api/approvals/{approval_id}/reject")
def reject_rental(
    request: Request,
    approval_id: int,
    payload: ApprovalDecisionRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_admin_session_or_403(request, x_session_token)
    note = payload.note if payload else None
    pending_before = pending_notification_ids(db)
    try:
        approval = rental_service.reject(db, approval_id, note, decided_by=session.get("userId"))
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    dispatch_new_notifications(db, pending_before)
    return rental_service.serialize_approval(approval)


# Emails


@app.get("/api/emails/logs")
def get_email_logs(log_date: date | None = Query(None, alias="date")):
    return email_service.get_email_logs(log_date)


@app.get("/api/emails/config")
def get_email_config():
    return email_service.get_email_config_summary()


@app.get("/api/emails/return-reminders")
def get_return_reminders(days: int = Query(DEFAULT_REMINDER_DAYS, ge=0), db: Session = Depends(get_rental_db)):
    return [
        rental_service.serialize_rental(rental, {"daysLeft": days_left})
        for rental, days_left in rental_service.list_return_reminders(db, days)
    ]


@app.get("/api/emails/overdue-rentals")
def get_overdue_email_candidates(db: Session = Depends(get_rental_db)):
    return get_overdue_rentals(db)


@app.post("/api/emails/preview")
def preview_email(payload: EmailPreviewRequest):
    try:
        return email_service.render_template(
            payload.type,
            user_name=payload.userName,
            item_name=payload.itemName,
            expected_return_date=payload.expectedReturnDate,
            reason=payload.reason,
            days_left=payload.daysLeft,
            days_overdue=payload.daysOverdue,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/emails/send-return-reminders")
def send_return_reminders(
    request: Request,
    payload: ReminderSendRequest,
    days: int = Query(DEFAULT_REMINDER_DAYS, ge=0),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return _send_due_notifications(db, "return_reminder", days, payload.rentalIds)


@app.post("/api/emails/send-overdue-reminders")
def send_overdue_reminders(
    request: Request,
    payload: ReminderSendRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return _send_due_notifications(db, "overdue", 0, payload.rentalIds)


# Notification outbox


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_rental_db)):
    return [serialize_notification(n) for n in list_pending_notifications(db)]


@app.post("/api/notifications/dispatch")
def dispatch_notifications(
    request: Request,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(request, x_session_token)
    return dispatch_pending_notifications(db)


def _send_due_notifications(db: Session, kind: str, days: int, rental_ids: list[int]) -> dict:
    if not rental_ids:
        raise HTTPException(status_code=400, detail="No rentalIds supplied.")
    pending_before = pending_notification_ids(db)
    queued = rental_service.enqueue_due_notifications(db, days, rental_ids=rental_ids, kinds=(kind,))
    result = dispatch_new_notifications(db, pending_before)
    result["queued"] = queued
    return result


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        return dict(session_from_token)
    if "session" in request.scope:
        session_from_cookie = request.session.get("user")
        if isinstance(session_from_cookie, dict):
            return dict(session_from_cookie)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_admin_session_or_403(request: Request, session_token: str | None) -> dict:
    session = _require_session_or_401(request, session_token)
    if str(session.get("role") or "").strip() != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def _require_owner_or_admin(session: dict, rental) -> None:
    if session.get("role") == UserRole.ADMIN.value:
        return
    if str(session.get("userId") or "") != rental.UserID:
        raise HTTPException(status_code=403, detail="Only the requester or an admin can change this rental.")
