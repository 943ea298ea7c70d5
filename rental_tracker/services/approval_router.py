from __future__ import annotations

import os

from models.enums import ItemCategory


PRODUCT_TEAM_QUEUE = "product-team-manager"
TECH_TEAM_QUEUE = "tech-manager"

APPROVAL_QUEUES = {
    PRODUCT_TEAM_QUEUE: {
        "label": "Product operations manager",
        "emailEnv": "APPROVER_EMAIL_PRODUCT_TEAM",
    },
    TECH_TEAM_QUEUE: {
        "label": "Technology manager",
        "emailEnv": "APPROVER_EMAIL_TECH_TEAM",
    },
}

APPROVAL_ROUTES: dict[ItemCategory, tuple[str, ...]] = {
    ItemCategory.ROUTER: (TECH_TEAM_QUEUE,),
    ItemCategory.SWITCH: (TECH_TEAM_QUEUE,),
    ItemCategory.WIRELESS: (TECH_TEAM_QUEUE,),
    ItemCategory.TRANSCEIVER: (TECH_TEAM_QUEUE,),
    ItemCategory.CONSUMABLE: (PRODUCT_TEAM_QUEUE,),
}


def route_approvals(category: str | ItemCategory) -> tuple[str, ...]:
    return APPROVAL_ROUTES.get(ItemCategory.parse(category), ())


def approver_label(queue_id: str) -> str:
    queue = APPROVAL_QUEUES.get(queue_id) or {}
    return queue.get("label") or queue_id


def approver_email(queue_id: str) -> str | None:
    queue = APPROVAL_QUEUES.get(queue_id)
    if not queue:
        return None
    value = (os.environ.get(queue["emailEnv"]) or "").strip()
    return value or None
