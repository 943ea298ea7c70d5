from __future__ import annotations

from enum import Enum


class ItemCategory(str, Enum):
    ROUTER = "router"
    SWITCH = "switch"
    WIRELESS = "wireless"
    TRANSCEIVER = "transceiver"
    CONSUMABLE = "consumable"

    @classmethod
    def parse(cls, raw: str | ItemCategory | None) -> ItemCategory:
        """Resolve any category label used by older clients to the enum.

        Raises ValueError for unknown labels.
        """
        if isinstance(raw, cls):
            return raw
        key = (raw or "").strip()
        if not key:
            raise ValueError("category is required")
        match = CATEGORY_ALIASES.get(key) or CATEGORY_ALIASES.get(key.lower())
        if match is None:
            raise ValueError(f"Unknown category: {key}")
        return match

    @property
    def requires_serial(self) -> bool:
        return self is not ItemCategory.CONSUMABLE


CATEGORY_ALIASES: dict[str, ItemCategory] = {
    "router": ItemCategory.ROUTER,
    "라우터": ItemCategory.ROUTER,
    "switch": ItemCategory.SWITCH,
    "스위치": ItemCategory.SWITCH,
    "wireless": ItemCategory.WIRELESS,
    "무선 제품군": ItemCategory.WIRELESS,
    "무선": ItemCategory.WIRELESS,
    "transceiver": ItemCategory.TRANSCEIVER,
    "트랜시버": ItemCategory.TRANSCEIVER,
    "consumable": ItemCategory.CONSUMABLE,
    "소모품": ItemCategory.CONSUMABLE,
    "소모품류": ItemCategory.CONSUMABLE,
}


class ItemStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class RentalStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    ACTIVE = "active"
    RETURNED = "returned"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Department(str, Enum):
    PRODUCT_OPERATIONS = "product_operations"
    TECHNOLOGY = "technology"

    @classmethod
    def parse(cls, raw: str | Department | None) -> Department:
        if isinstance(raw, cls):
            return raw
        key = (raw or "").strip()
        match = DEPARTMENT_ALIASES.get(key) or DEPARTMENT_ALIASES.get(key.lower())
        if match is None:
            raise ValueError(f"Unknown department: {key}")
        return match


DEPARTMENT_ALIASES: dict[str, Department] = {
    "product_operations": Department.PRODUCT_OPERATIONS,
    "상품운용팀": Department.PRODUCT_OPERATIONS,
    "technology": Department.TECHNOLOGY,
    "기술본부": Department.TECHNOLOGY,
}


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
