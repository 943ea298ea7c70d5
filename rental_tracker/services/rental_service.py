from __future__ import annotations

import logging
import os
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.enums import ApprovalDecision, ItemCategory, ItemStatus, RentalStatus
from models.rental_models import Approval, Item, Rental, User
from services.approval_router import approver_email, route_approvals
from services.audit_service import log_audit
from services.errors import RecordNotFoundError, WorkflowError
from services.item_service import OPEN_RENTAL_STATES, serialize_item
from services.notification_service import enqueue_notification, rental_context


logger = logging.getLogger("rental_tracker.rentals")

RENTAL_TRANSITIONS = {
    RentalStatus.REQUESTED: {RentalStatus.APPROVED, RentalStatus.ACTIVE, RentalStatus.REJECTED},
    RentalStatus.APPROVED: {RentalStatus.ACTIVE, RentalStatus.REJECTED},
    RentalStatus.ACTIVE: {RentalStatus.RETURNED},
    RentalStatus.RETURNED: set(),
    RentalStatus.REJECTED: set(),
}
AWAITING_DECISION_STATES = {RentalStatus.REQUESTED.value, RentalStatus.APPROVED.value}


def consumables_allow_concurrent() -> bool:
    raw = os.environ.get("CONSUMABLES_ALLOW_CONCURRENT", "true")
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def is_exclusive(item: Item) -> bool:
    """Exclusive items allow one open rental at a time and track availability."""
    if item.Category != ItemCategory.CONSUMABLE.value:
        return True
    return not consumables_allow_concurrent()


def _transition_state(rental: Rental, target: RentalStatus) -> None:
    current = RentalStatus(rental.Status)
    if target == current:
        return
    if target not in RENTAL_TRANSITIONS[current]:
        raise WorkflowError(f"Invalid state transition: {current.value} -> {target.value}")
    rental.Status = target.value
    rental.UpdatedDate = datetime.now()


def _rental_query():
    return (
        select(Rental)
        .options(selectinload(Rental.Item))
        .options(selectinload(Rental.User))
        .options(selectinload(Rental.Approvals))
    )


def get_rental(db: Session, rental_id: int) -> Rental:
    rental = db.execute(_rental_query().where(Rental.RentalID == rental_id)).scalars().first()
    if not rental:
        raise RecordNotFoundError("Rental not found")
    return rental


def _get_approval(db: Session, approval_id: int) -> Approval:
    approval = db.get(Approval, approval_id)
    if not approval:
        raise RecordNotFoundError("Approval not found")
    return approval


def create_rental(db: Session, item_id: int, user_id: str, expected_return_date: date, today: date | None = None) -> Rental:
    today = today or date.today()
    item = db.get(Item, item_id)
    if not item:
        raise WorkflowError("Item not found.")
    user = db.get(User, user_id)
    if not user:
        raise WorkflowError("User not found.")
    if item.Status != ItemStatus.AVAILABLE.value:
        raise WorkflowError("Item is not available for rental.")
    if expected_return_date < today:
        raise WorkflowError("expectedReturnDate must be today or later.")

    if is_exclusive(item):
        open_rental = db.execute(
            select(Rental).where(Rental.ItemID == item.ItemID).where(Rental.Status.in_(OPEN_RENTAL_STATES))
        ).scalars().first()
        if open_rental:
            raise WorkflowError(f"Item already has an open rental (status: {open_rental.Status}).")

    now = datetime.now()
    rental = Rental(
        ItemID=item.ItemID,
        UserID=user.UserID,
        RequestedDate=now,
        ExpectedReturnDate=expected_return_date,
        Status=RentalStatus.REQUESTED.value,
        CreatedDate=now,
        UpdatedDate=now,
    )
    rental.Item = item
    rental.User = user
    db.add(rental)
    db.flush()

    queues = route_approvals(item.Category)
    for queue_id in queues:
        rental.Approvals.append(Approval(ApproverID=queue_id, Decision=ApprovalDecision.PENDING.value))
        enqueue_notification(db, rental, "rental_request", approver_email(queue_id), **rental_context(rental))

    log_audit(db, "Rental", rental.RentalID, "CreateRental", f"Item {item.ItemID}; approvers={','.join(queues) or '-'}", user_id=user.UserID)
    if not queues:
        _activate_rental(db, rental, decided_by=None)

    db.commit()
    logger.info("Rental %s requested item=%s user=%s approvals=%s", rental.RentalID, item.ItemID, user.UserID, len(queues))
    return rental


def _activate_rental(db: Session, rental: Rental, decided_by: str | None) -> None:
    _transition_state(rental, RentalStatus.ACTIVE)
    rental.RentalDate = datetime.now()
    item = rental.Item
    if item and is_exclusive(item):
        item.Status = ItemStatus.UNAVAILABLE.value
        item.UpdatedDate = datetime.now()
    enqueue_notification(db, rental, "rental_approved", rental.User.Email if rental.User else None, **rental_context(rental))
    log_audit(db, "Rental", rental.RentalID, "Activate", "All approvals granted", user_id=decided_by)


def _decide(db: Session, approval_id: int, decision: ApprovalDecision, note: str | None, decided_by: str | None) -> Approval:
    approval = _get_approval(db, approval_id)
    if approval.Decision != ApprovalDecision.PENDING.value:
        raise WorkflowError("Approval has already been decided.")
    rental = get_rental(db, approval.RentalID)
    if rental.Status not in AWAITING_DECISION_STATES:
        raise WorkflowError(f"Rental is not awaiting approval (status: {rental.Status}).")

    approval.Decision = decision.value
    approval.DecisionDate = datetime.now()
    approval.DecidedBy = decided_by
    approval.Note = (note or "").strip() or None
    return approval


def approve(db: Session, approval_id: int, note: str | None = None, decided_by: str | None = None) -> Approval:
    approval = _decide(db, approval_id, ApprovalDecision.APPROVED, note, decided_by)
    rental = approval.Rental
    log_audit(db, "Approval", approval.ApprovalID, "Approve", approval.Note, user_id=decided_by)

    if all(a.Decision == ApprovalDecision.APPROVED.value for a in rental.Approvals):
        _activate_rental(db, rental, decided_by)
    else:
        rental.UpdatedDate = datetime.now()

    db.commit()
    logger.info("Approval %s approved by %s; rental %s is %s", approval.ApprovalID, decided_by, rental.RentalID, rental.Status)
    return approval


def reject(db: Session, approval_id: int, note: str | None = None, decided_by: str | None = None) -> Approval:
    approval = _decide(db, approval_id, ApprovalDecision.REJECTED, note, decided_by)
    rental = approval.Rental
    _transition_state(rental, RentalStatus.REJECTED)
    context = rental_context(rental)
    context["reason"] = approval.Note
    enqueue_notification(db, rental, "rental_rejected", rental.User.Email if rental.User else None, **context)
    log_audit(db, "Approval", approval.ApprovalID, "Reject", approval.Note, user_id=decided_by)

    db.commit()
    logger.info("Approval %s rejected by %s; rental %s rejected", approval.ApprovalID, decided_by, rental.RentalID)
    return approval


def _other_active_rental(db: Session, rental: Rental) -> Rental | None:
    stmt = (
        select(Rental)
        .where(Rental.ItemID == rental.ItemID)
        .where(Rental.RentalID != rental.RentalID)
        .where(Rental.Status == RentalStatus.ACTIVE.value)
    )
    return db.execute(stmt).scalars().first()


def return_rental(db: Session, rental_id: int, returned_by: str | None = None) -> Rental:
    rental = get_rental(db, rental_id)
    if rental.Status != RentalStatus.ACTIVE.value:
        raise WorkflowError("Rental is not active.")

    _transition_state(rental, RentalStatus.RETURNED)
    rental.ActualReturnDate = datetime.now()
    item = rental.Item
    # Checks the item's current status, not today's exclusivity setting.
    if item and item.Status == ItemStatus.UNAVAILABLE.value and not _other_active_rental(db, rental):
        item.Status = ItemStatus.AVAILABLE.value
        item.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "Return", "Rental returned", user_id=returned_by)

    db.commit()
    logger.info("Rental %s returned", rental.RentalID)
    return rental


def extend_rental(db: Session, rental_id: int, new_expected_return_date: date, extended_by: str | None = None, today: date | None = None) -> Rental:
    today = today or date.today()
    rental = get_rental(db, rental_id)
    if rental.Status not in OPEN_RENTAL_STATES:
        raise WorkflowError("Only open rentals can be extended.")
    if new_expected_return_date < today:
        raise WorkflowError("newExpectedReturnDate must be today or later.")
    if rental.RentalDate and new_expected_return_date < rental.RentalDate.date():
        raise WorkflowError("newExpectedReturnDate must be on or after the rental date.")

    previous = rental.ExpectedReturnDate
    rental.ExpectedReturnDate = new_expected_return_date
    rental.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "Extend", f"{previous} -> {new_expected_return_date}", user_id=extended_by)
    db.commit()
    return rental


# Queries


def list_rentals(db: Session) -> list[Rental]:
    return db.execute(_rental_query().order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())).scalars().all()


def list_rentals_for_user(db: Session, user_id: str) -> list[Rental]:
    stmt = _rental_query().where(Rental.UserID == user_id).order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
    return db.execute(stmt).scalars().all()


def list_pending_rentals(db: Session) -> list[Rental]:
    stmt = _rental_query().where(Rental.Status.in_(AWAITING_DECISION_STATES)).order_by(Rental.RentalID)
    return db.execute(stmt).scalars().all()


def _active_rentals(db: Session) -> list[Rental]:
    stmt = _rental_query().where(Rental.Status == RentalStatus.ACTIVE.value).order_by(Rental.ExpectedReturnDate, Rental.RentalID)
    return db.execute(stmt).scalars().all()


def list_overdue_rentals(db: Session, today: date | None = None) -> list[tuple[Rental, int]]:
    """Active rentals past their expected return date, with days overdue."""
    today = today or date.today()
    return [
        (rental, (today - rental.ExpectedReturnDate).days)
        for rental in _active_rentals(db)
        if rental.ExpectedReturnDate < today
    ]


def list_return_reminders(db: Session, days: int, today: date | None = None) -> list[tuple[Rental, int]]:
    """Active rentals due within ``days`` days from today, with days left."""
    if days < 0:
        raise WorkflowError("days must be zero or greater.")
    today = today or date.today()
    reminders = []
    for rental in _active_rentals(db):
        days_left = (rental.ExpectedReturnDate - today).days
        if 0 <= days_left <= days:
            reminders.append((rental, days_left))
    return reminders


def list_pending_approvals(db: Session, approver_id: str | None = None) -> list[Approval]:
    stmt = (
        select(Approval)
        .join(Rental, Approval.RentalID == Rental.RentalID)
        .options(selectinload(Approval.Rental).selectinload(Rental.Item))
        .options(selectinload(Approval.Rental).selectinload(Rental.User))
        .where(Approval.Decision == ApprovalDecision.PENDING.value)
        .where(Rental.Status.in_(AWAITING_DECISION_STATES))
        .order_by(Approval.ApprovalID)
    )
    if approver_id:
        stmt = stmt.where(Approval.ApproverID == approver_id)
    return db.execute(stmt).scalars().all()


def list_approvals_for_rental(db: Session, rental_id: int) -> list[Approval]:
    rental = get_rental(db, rental_id)
    return sorted(rental.Approvals, key=lambda a: a.ApprovalID)


def enqueue_due_notifications(db: Session, days: int, today: date | None = None, rental_ids: list[int] | None = None, kinds: tuple[str, ...] = ("return_reminder", "overdue")) -> int:
    created = 0
    selected = set(rental_ids) if rental_ids is not None else None
    if "return_reminder" in kinds:
        for rental, days_left in list_return_reminders(db, days, today=today):
            if selected is not None and rental.RentalID not in selected:
                continue
            if enqueue_notification(db, rental, "return_reminder", rental.User.Email, days_left=days_left, **rental_context(rental)):
                created += 1
    if "overdue" in kinds:
        for rental, days_overdue in list_overdue_rentals(db, today=today):
            if selected is not None and rental.RentalID not in selected:
                continue
            if enqueue_notification(db, rental, "overdue", rental.User.Email, days_overdue=days_overdue, **rental_context(rental)):
                created += 1
    db.commit()
    return created


# Serialization


def serialize_user(user: User | None) -> dict | None:
    if not user:
        return None
    return {
        "userId": user.UserID,
        "name": user.Name,
        "department": user.Department,
        "role": user.Role,
        "email": user.Email,
    }


def serialize_approval(approval: Approval) -> dict:
    return {
        "approvalId": approval.ApprovalID,
        "rentalId": approval.RentalID,
        "approverId": approval.ApproverID,
        "approvalStatus": approval.Decision,
        "approvalDate": approval.DecisionDate,
        "decidedBy": approval.DecidedBy,
        "note": approval.Note,
    }


def serialize_rental(rental: Rental, extra: dict | None = None) -> dict:
    payload = {
        "rentalId": rental.RentalID,
        "itemId": rental.ItemID,
        "userId": rental.UserID,
        "requestedDate": rental.RequestedDate,
        "rentalDate": rental.RentalDate,
        "expectedReturnDate": rental.ExpectedReturnDate,
        "actualReturnDate": rental.ActualReturnDate,
        "status": rental.Status,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
        "item": serialize_item(rental.Item) if rental.Item else None,
        "user": serialize_user(rental.User),
        "approvals": [serialize_approval(a) for a in sorted(rental.Approvals, key=lambda a: a.ApprovalID)],
    }
    if extra:
        payload.update(extra)
    return payload
