from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session, selectinload

from db.models import Order, OrderItem, User
from services.delivery_store import history_entry, load_json_list, load_json_object
from services.errors import ConflictError, NotFoundError, PolicyError
from services.schedule_meta_service import meta_key, schedule_meta_by_pair

logger = logging.getLogger(__name__)

ORDER_ACCEPTANCE_STATUSES = ("PENDING_REVIEW", "CONFIRMED", "DECLINED")
ORDER_LIFECYCLE_STATUSES = ("PAID", "CONFIRMED", "PREPARING", "OUT_FOR_DELIVERY", "DELIVERED")
USER_ORDERS_DEFAULT_LIMIT = 20
USER_ORDERS_MAX_LIMIT = 100


def is_paid(order: Order) -> bool:
    return str(order.payment_status or "").upper() == "PAID"


def serialize_item(item: OrderItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "cartItemId": item.cart_item_id,
        "type": item.item_type,
        "plan": item.plan,
        "title": item.title,
        "quantity": item.quantity,
        "unitPrice": item.unit_price,
        "mealId": item.meal_id,
        "addonId": item.addon_id,
        "startDate": item.start_date,
        "deliveryTime": item.delivery_time,
        "immediateDelivery": bool(item.immediate_delivery),
    }


def serialize_order(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "userId": order.user_id,
        "paymentStatus": order.payment_status,
        "acceptanceStatus": order.acceptance_status,
        "currentStatus": order.current_status,
        "statusHistory": load_json_list(order.status_history),
        "deliveryAddress": load_json_object(order.delivery_address),
        "subtotal": order.subtotal,
        "deliveryFee": order.delivery_fee,
        "total": order.total,
        "adminNotes": order.admin_notes,
        "movedToKitchenAt": order.moved_to_kitchen_at.isoformat() if order.moved_to_kitchen_at else None,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        "items": [serialize_item(it) for it in order.items or []],
    }


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def set_acceptance(db: Session, order: Order, acceptance_status: str | None) -> Order:
    status = str(acceptance_status or "").strip()
    if not status:
        raise ValueError("acceptanceStatus is required")
    if status not in ORDER_ACCEPTANCE_STATUSES:
        raise ValueError("Invalid acceptanceStatus")
    if status == "PENDING_REVIEW":
        raise ValueError("Cannot set PENDING_REVIEW manually")
    if not is_paid(order):
        raise PolicyError("Acceptance updates are only allowed for paid orders")
    if order.moved_to_kitchen_at:
        raise PolicyError("Order has already been moved to kitchen")
    order.acceptance_status = status
    db.flush()
    logger.info("Order acceptance changed: %s -> %s", order.id, status)
    return order


def _validate_lifecycle_transition(from_status: str, to_status: str) -> bool:
    """True when the move is a no-op; raises when it is not the next step."""
    if from_status == to_status:
        return True
    try:
        idx = ORDER_LIFECYCLE_STATUSES.index(from_status)
    except ValueError:
        raise PolicyError(f"Invalid transition from {from_status} to {to_status}")
    if idx + 1 >= len(ORDER_LIFECYCLE_STATUSES) or ORDER_LIFECYCLE_STATUSES[idx + 1] != to_status:
        raise PolicyError(f"Invalid transition from {from_status} to {to_status}")
    return False


def set_lifecycle_status(db: Session, order: Order, next_status: str | None, *, now: datetime) -> Order:
    """Forward-only order lifecycle with a compare-and-set on the current status."""
    status = str(next_status or "").strip()
    if not status:
        raise ValueError("status is required")
    if status not in ORDER_LIFECYCLE_STATUSES:
        raise ValueError("Invalid status")
    if status == "PAID":
        raise ValueError("Admins cannot set PAID manually")
    if not is_paid(order):
        raise PolicyError("Lifecycle updates are only allowed for paid orders")

    from_status = str(order.current_status or "PAID").strip()
    if _validate_lifecycle_transition(from_status, status):
        return order

    history = load_json_list(order.status_history)
    history.append(history_entry(status, "ADMIN", now))
    matched = (
        db.query(Order)
        .filter(Order.id == order.id, Order.current_status == from_status)
        .update(
            {
                Order.current_status: status,
                Order.status_history: json.dumps(history, ensure_ascii=True),
                Order.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.refresh(order)
    if not matched:
        raise ConflictError("Order status changed concurrently. Please retry.")
    logger.info("Order lifecycle status changed: %s %s -> %s", order.id, from_status, status)
    return order


def attach_schedule_meta(db: Session, user_id: int, orders: list[dict], *, today: date) -> list[dict]:
    pairs = [(user_id, it["cartItemId"]) for o in orders for it in o["items"] if it.get("cartItemId")]
    metas = schedule_meta_by_pair(db, pairs, today=today)
    for o in orders:
        for it in o["items"]:
            meta = metas.get(meta_key(user_id, it.get("cartItemId")))
            if meta is None:
                continue
            data = meta.to_dict()
            it["subscriptionSchedule"] = {
                k: data[k]
                for k in ("scheduleEndDate", "nextServingDate", "deliveredCount", "skippedCount", "scheduledCount")
            }
    return orders


def list_my_orders(db: Session, user: User, *, page: int = 1, limit: int = USER_ORDERS_DEFAULT_LIMIT, today: date) -> dict:
    lim = min(USER_ORDERS_MAX_LIMIT, max(1, int(limit or USER_ORDERS_DEFAULT_LIMIT)))
    pg = max(1, int(page or 1))
    offset = (pg - 1) * lim
    base = db.query(Order).filter(Order.user_id == user.id)
    total = base.count()
    rows = (
        base.options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(lim)
        .all()
    )
    items = attach_schedule_meta(db, user.id, [serialize_order(o) for o in rows], today=today)
    return {
        "items": items,
        "meta": {"page": pg, "limit": lim, "total": total, "hasNextPage": offset + len(rows) < total},
    }


def get_my_order(db: Session, user: User, order_id: int, *, today: date) -> dict:
    order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
    if not order:
        raise NotFoundError("Order not found")
    return attach_schedule_meta(db, user.id, [serialize_order(order)], today=today)[0]
