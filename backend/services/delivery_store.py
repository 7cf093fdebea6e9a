"""Delivery rows: inserts, date reassignment, pending removal and status moves.

Every mutation here returns a ``MutationResult`` instead of raising, so the
approval paths can stay best-effort and log what did not happen.
"""
from __future__ import annotations

import enum
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import Delivery
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

ORDER_SCOPE_MARKER = "__ORDER__"

KITCHEN_STATUSES = ("PENDING", "COOKING", "PACKED", "OUT_FOR_DELIVERY", "DELIVERED", "SKIPPED")
ACTIVE_STATUSES = ("PENDING", "COOKING", "PACKED", "OUT_FOR_DELIVERY")
FINAL_STATUSES = ("DELIVERED", "SKIPPED")


class MutationResult(str, enum.Enum):
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"

    @property
    def ok(self) -> bool:
        return self is MutationResult.OK


def delivery_scope(subscription_id: str | None, order_id: int | None) -> str:
    sid = str(subscription_id or "").strip()
    if sid:
        return sid
    return f"order:{order_id}"


def build_group_key(user_id: int, scope: str, date_iso: str, time_hhmm: str) -> str:
    return f"{int(user_id)}|{scope}|{date_iso}|{time_hhmm}"


def load_json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def load_json_object(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def history_entry(status: str, changed_by: str, at: datetime) -> dict[str, str]:
    return {"status": status, "changedAt": at.isoformat(), "changedBy": changed_by}


def serialize_delivery(row: Delivery) -> dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "subscriptionId": row.subscription_id,
        "orderId": row.order_id,
        "sourceCartItemId": row.source_cart_item_id,
        "date": row.date,
        "time": row.time,
        "groupKey": row.group_key,
        "status": row.status,
        "statusHistory": load_json_list(row.status_history),
        "items": load_json_list(row.items),
        "address": load_json_object(row.address),
    }


def insert_delivery(
    db: Session,
    *,
    user_id: int,
    subscription_id: str | None,
    order_id: int | None,
    source_cart_item_id: str | None,
    date_iso: str,
    time_hhmm: str,
    items: list | None = None,
    address: dict | None = None,
) -> tuple[MutationResult, Delivery | None]:
    """Insert one PENDING delivery; a duplicate group key comes back as CONFLICT."""
    row = Delivery(
        user_id=user_id,
        subscription_id=subscription_id,
        order_id=order_id,
        source_cart_item_id=source_cart_item_id,
        date=date_iso,
        time=time_hhmm,
        group_key=build_group_key(user_id, delivery_scope(subscription_id, order_id), date_iso, time_hhmm),
        status="PENDING",
        status_history=json.dumps([history_entry("PENDING", "SYSTEM", utcnow())], ensure_ascii=True),
        items=json.dumps(items or [], ensure_ascii=True),
        address=json.dumps(address or {}, ensure_ascii=True) if address else None,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        logger.info("Delivery already exists for %s", row.group_key)
        return MutationResult.CONFLICT, None
    return MutationResult.OK, row


def clone_delivery(db: Session, template: Delivery, date_iso: str) -> tuple[MutationResult, Delivery | None]:
    """Insert a PENDING copy of ``template`` on another date."""
    return insert_delivery(
        db,
        user_id=template.user_id,
        subscription_id=template.subscription_id,
        order_id=template.order_id,
        source_cart_item_id=template.source_cart_item_id,
        date_iso=date_iso,
        time_hhmm=template.time,
        items=load_json_list(template.items),
        address=load_json_object(template.address) or None,
    )


def _subscription_rows(db: Session, user_id: int, subscription_id: str):
    return db.query(Delivery).filter(
        Delivery.user_id == user_id,
        Delivery.subscription_id == subscription_id,
    )


def scheduled_dates(db: Session, user_id: int, subscription_id: str) -> set[str]:
    return {d for (d,) in _subscription_rows(db, user_id, subscription_id).with_entities(Delivery.date).all()}


def slot_taken(db: Session, user_id: int, subscription_id: str, date_iso: str) -> bool:
    return (
        _subscription_rows(db, user_id, subscription_id).filter(Delivery.date == date_iso).first()
        is not None
    )


def last_scheduled_delivery(db: Session, user_id: int, subscription_id: str) -> Delivery | None:
    return (
        _subscription_rows(db, user_id, subscription_id)
        .order_by(Delivery.date.desc(), Delivery.time.desc(), Delivery.id.desc())
        .first()
    )


def remove_pending_in_window(
    db: Session, user_id: int, subscription_id: str, start_iso: str, end_iso: str
) -> int:
    """Delete PENDING rows dated inside [start_iso, end_iso]; returns how many went."""
    removed = (
        _subscription_rows(db, user_id, subscription_id)
        .filter(
            Delivery.status == "PENDING",
            Delivery.date >= start_iso,
            Delivery.date <= end_iso,
        )
        .delete(synchronize_session="fetch")
    )
    return int(removed or 0)


def reassign_delivery_date(db: Session, delivery_id: int, new_date_iso: str) -> MutationResult:
    """Move a PENDING delivery to ``new_date_iso`` when that slot is still empty.

    The row keeps its id and status history; only the date and the derived
    group key change.
    """
    row = db.get(Delivery, delivery_id)
    if row is None or row.status != "PENDING":
        return MutationResult.NOT_FOUND
    if row.date == new_date_iso:
        return MutationResult.OK
    if row.subscription_id and slot_taken(db, row.user_id, row.subscription_id, new_date_iso):
        return MutationResult.CONFLICT

    try:
        with db.begin_nested():
            row.date = new_date_iso
            row.group_key = build_group_key(
                row.user_id, delivery_scope(row.subscription_id, row.order_id), new_date_iso, row.time
            )
            db.flush()
    except IntegrityError:
        return MutationResult.CONFLICT
    return MutationResult.OK


def transition_status(
    db: Session,
    row: Delivery,
    *,
    from_status: str,
    to_status: str,
    changed_by: str,
    at: datetime,
) -> MutationResult:
    """Conditionally move ``row`` from ``from_status``; CONFLICT if someone got there first."""
    history = load_json_list(row.status_history)
    history.append(history_entry(to_status, changed_by, at))
    updated = (
        db.query(Delivery)
        .filter(Delivery.id == row.id, Delivery.status == from_status)
        .update(
            {
                Delivery.status: to_status,
                Delivery.status_history: json.dumps(history, ensure_ascii=True),
                Delivery.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.refresh(row)
    if not updated:
        return MutationResult.CONFLICT
    return MutationResult.OK
