from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.enums import ItemCategory, ItemStatus, RentalStatus
from models.rental_models import Item, Rental
from services.errors import RecordNotFoundError, WorkflowError


OPEN_RENTAL_STATES = {RentalStatus.REQUESTED.value, RentalStatus.APPROVED.value, RentalStatus.ACTIVE.value}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_category_or_error(raw: str | None) -> ItemCategory:
    try:
        return ItemCategory.parse(raw)
    except ValueError as exc:
        raise WorkflowError(str(exc)) from exc


def parse_status_or_error(raw: str | None) -> ItemStatus:
    try:
        return ItemStatus((raw or "").strip().lower())
    except ValueError as exc:
        raise WorkflowError(f"Unknown item status: {raw}") from exc


def validate_serial(category: ItemCategory, serial_number: str | None) -> None:
    if category.requires_serial and not _clean(serial_number):
        raise WorkflowError(f"Serial number is required for {category.value} items.")


def get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise RecordNotFoundError("Item not found")
    return item


def list_items(db: Session, *, category: str | None = None, status: ItemStatus | None = None) -> list[Item]:
    stmt = select(Item).order_by(Item.CreatedDate.desc(), Item.ItemID.desc())
    if category is not None:
        stmt = stmt.where(Item.Category == parse_category_or_error(category).value)
    if status is not None:
        stmt = stmt.where(Item.Status == status.value)
    return db.execute(stmt).scalars().all()


def create_item(
    db: Session,
    *,
    category: str,
    name: str,
    model: str | None = None,
    serial_number: str | None = None,
    status: str | None = None,
    note: str | None = None,
    created_by: str | None = None,
) -> Item:
    parsed_category = parse_category_or_error(category)
    validate_serial(parsed_category, serial_number)
    if not _clean(name):
        raise WorkflowError("Item name is required.")
    parsed_status = parse_status_or_error(status) if status else ItemStatus.AVAILABLE

    item = Item(
        Category=parsed_category.value,
        Name=_clean(name),
        Model=_clean(model),
        SerialNumber=_clean(serial_number),
        Status=parsed_status.value,
        Note=note,
        CreatedBy=created_by,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_item(db: Session, item_id: int, changes: dict) -> Item:
    """Apply a partial update; ``changes`` uses the API's camelCase keys."""
    item = get_item(db, item_id)

    category = parse_category_or_error(changes["category"]) if changes.get("category") else ItemCategory.parse(item.Category)
    serial_number = changes["serialNumber"] if "serialNumber" in changes else item.SerialNumber
    if "category" in changes or "serialNumber" in changes:
        validate_serial(category, serial_number)
    if "name" in changes and not _clean(changes["name"]):
        raise WorkflowError("Item name is required.")
    status = parse_status_or_error(changes["status"]) if changes.get("status") else None
    category_changed = category.value != item.Category
    status_changed = status is not None and status.value != item.Status
    if category_changed or status_changed:
        open_rental = _open_rental_for(db, item)
        if open_rental:
            raise WorkflowError(f"Category and status cannot change while the item has an open rental (status: {open_rental.Status}).")

    item.Category = category.value
    item.SerialNumber = _clean(serial_number)
    if "name" in changes:
        item.Name = _clean(changes["name"])
    if "model" in changes:
        item.Model = _clean(changes["model"])
    if "note" in changes:
        item.Note = changes["note"]
    if status is not None:
        item.Status = status.value
    item.UpdatedDate = datetime.now()
    db.commit()
    return item


def _open_rental_for(db: Session, item: Item) -> Rental | None:
    stmt = select(Rental).where(Rental.ItemID == item.ItemID).where(Rental.Status.in_(OPEN_RENTAL_STATES))
    return db.execute(stmt).scalars().first()


def delete_item(db: Session, item_id: int) -> None:
    """Delete an item that has never been rented; rental history is kept."""
    item = get_item(db, item_id)
    open_rental = _open_rental_for(db, item)
    if open_rental:
        raise WorkflowError(f"Item has an open rental (status: {open_rental.Status}).")
    if db.execute(select(Rental.RentalID).where(Rental.ItemID == item.ItemID)).first():
        raise WorkflowError("Item has rental history and cannot be deleted; mark it unavailable instead.")
    db.delete(item)
    db.commit()


def serialize_item(item: Item) -> dict:
    return {
        "itemId": item.ItemID,
        "category": item.Category,
        "name": item.Name,
        "model": item.Model,
        "serialNumber": item.SerialNumber,
        "status": item.Status,
        "note": item.Note,
        "createdBy": item.CreatedBy,
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
