from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import NotificationQueue, Rental
from services import email_service


logger = logging.getLogger("rental_tracker.notifications")

DEFAULT_MAX_ATTEMPTS = 3


def max_attempts() -> int:
    try:
        return max(1, int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS") or DEFAULT_MAX_ATTEMPTS))
    except ValueError:
        return DEFAULT_MAX_ATTEMPTS


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Unsupported payload value: {value!r}")


def enqueue_notification(db: Session, rental: Rental, kind: str, recipient: str | None, **context) -> NotificationQueue | None:
    """Add an outbox row; the caller's commit makes it visible to dispatch."""
    if not recipient:
        logger.info("Skipping %s notification for rental %s: no recipient", kind, rental.RentalID)
        return None
    notification = NotificationQueue(
        RentalID=rental.RentalID,
        NotificationType=email_service.normalize_template_kind(kind),
        Recipient=recipient,
        Payload=json.dumps(context, default=_json_default, ensure_ascii=False),
        Attempts=0,
        CreatedAt=datetime.now(),
    )
    db.add(notification)
    return notification


def rental_context(rental: Rental) -> dict:
    return {
        "user_name": rental.User.Name if rental.User else rental.UserID,
        "item_name": rental.Item.Name if rental.Item else f"Item {rental.ItemID}",
        "expected_return_date": rental.ExpectedReturnDate,
    }


def list_pending_notifications(db: Session) -> list[NotificationQueue]:
    stmt = (
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .where(NotificationQueue.Attempts < max_attempts())
        .order_by(NotificationQueue.NotificationID)
    )
    return db.execute(stmt).scalars().all()


def deliver_notification(notification: NotificationQueue) -> bool:
    try:
        context = json.loads(notification.Payload or "{}")
    except json.JSONDecodeError:
        context = {}
    rendered = email_service.render_template(notification.NotificationType, **context)
    return email_service.send_email(
        notification.Recipient,
        rendered["subject"],
        text=rendered["text"],
        html=rendered["html"],
    )


def dispatch_pending_notifications(db: Session, notification_ids: list[int] | None = None) -> dict:
    sent = 0
    failed = 0
    results = []
    for notification in list_pending_notifications(db):
        if notification_ids is not None and notification.NotificationID not in notification_ids:
            continue
        notification.Attempts = int(notification.Attempts or 0) + 1
        try:
            delivered = deliver_notification(notification)
            error = None if delivered else "Email delivery failed"
        except Exception as exc:
            logger.exception("Notification %s could not be delivered", notification.NotificationID)
            delivered = False
            error = (str(exc) or exc.__class__.__name__)[:1000]
        if delivered:
            notification.SentAt = datetime.now()
            notification.LastError = None
            sent += 1
        else:
            notification.LastError = error
            failed += 1
            logger.warning(
                "Notification %s (%s) failed attempt %s/%s",
                notification.NotificationID,
                notification.NotificationType,
                notification.Attempts,
                max_attempts(),
            )
        results.append(serialize_notification(notification))
    db.commit()
    return {"sent": sent, "failed": failed, "results": results}


def pending_notification_ids(db: Session) -> set[int]:
    return {n.NotificationID for n in list_pending_notifications(db)}


def dispatch_new_notifications(db: Session, pending_before: set[int]) -> dict:
    """Send only the rows queued since ``pending_before`` was taken; older rows wait for a retry sweep."""
    new_ids = [nid for nid in pending_notification_ids(db) if nid not in pending_before]
    if not new_ids:
        return {"sent": 0, "failed": 0, "results": []}
    return dispatch_pending_notifications(db, notification_ids=new_ids)


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "rentalID": notification.RentalID,
        "type": notification.NotificationType,
        "recipient": notification.Recipient,
        "attempts": notification.Attempts,
        "lastError": notification.LastError,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
