from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from db.models import Order, OrderItem
from services.cycle_service import ONE_OFF_PLANS, RECURRING_PLANS, default_total_servings
from services.delivery_store import (
    ORDER_SCOPE_MARKER,
    clone_delivery,
    insert_delivery,
    last_scheduled_delivery,
    load_json_object,
    scheduled_dates,
)
from services.errors import PolicyError
from services.pause_window_service import (
    effective_pauses,
    is_paused_on,
    pause_windows_for,
    pauses_by_key,
)
from utils.datetime_utils import (
    add_days_iso,
    is_weekday_iso,
    iter_dates_iso,
    normalize_hhmm,
    parse_iso_date,
)

logger = logging.getLogger(__name__)

ACTIVATION_LOOKAHEAD_DAYS = 366
PAUSE_EXTENSION_LOOKAHEAD_DAYS = 366
SKIP_EXTENSION_LOOKAHEAD_DAYS = 120
DEFAULT_DELIVERY_TIME = "12:00"


def _plan(item: OrderItem) -> str:
    return str(item.plan or "").strip().lower()


def item_snapshot(order: Order, item: OrderItem) -> dict:
    title = item.title or item.item_type
    return {
        "orderId": order.id,
        "cartItemId": item.cart_item_id,
        "type": item.item_type,
        "plan": item.plan,
        "title": title,
        "quantity": int(item.quantity or 1),
    }


def item_start_date(item: OrderItem, today: date) -> str:
    if item.immediate_delivery:
        return today.isoformat()
    parsed = parse_iso_date(item.start_date)
    return (parsed or today).isoformat()


def _weekday_dates(
    start_iso: str,
    count: int,
    *,
    lookahead_days: int,
    windows=None,
    taken: set[str] | None = None,
) -> list[str]:
    """First ``count`` Monday-Friday dates from ``start_iso`` that are neither paused nor taken."""
    out: list[str] = []
    if count <= 0:
        return out
    end_iso = add_days_iso(start_iso, lookahead_days - 1)
    for iso in iter_dates_iso(start_iso, end_iso):
        if len(out) >= count:
            break
        if not is_weekday_iso(iso):
            continue
        if taken and iso in taken:
            continue
        if is_paused_on(windows, iso):
            continue
        out.append(iso)
    return out


def move_order_to_kitchen(db: Session, order: Order, *, today: date, now: datetime) -> int:
    """Expand a paid, confirmed order into PENDING deliveries.

    Returns the number of deliveries created. An order that was already moved
    creates nothing. ``moved_to_kitchen_at`` is only stamped once every insert
    has either landed or turned out to exist already.
    """
    if str(order.payment_status or "").upper() != "PAID":
        raise PolicyError("Kitchen move is only allowed for paid orders")
    if order.moved_to_kitchen_at:
        return 0
    if str(order.acceptance_status or "PENDING_REVIEW").upper() != "CONFIRMED":
        raise PolicyError("Order must be CONFIRMED before moving to kitchen")

    items = list(order.items or [])
    if not items:
        raise ValueError("Order has no items")
    address = load_json_object(order.delivery_address) or None

    created = 0
    if all(_plan(it) in ONE_OFF_PLANS for it in items):
        first = items[0]
        serving_day = _weekday_dates(item_start_date(first, today), 1, lookahead_days=7)[0]
        result, _ = insert_delivery(
            db,
            user_id=order.user_id,
            subscription_id=None,
            order_id=order.id,
            source_cart_item_id=ORDER_SCOPE_MARKER,
            date_iso=serving_day,
            time_hhmm=normalize_hhmm(first.delivery_time, DEFAULT_DELIVERY_TIME),
            items=[item_snapshot(order, it) for it in items],
            address=address,
        )
        created += 1 if result.ok else 0
    else:
        recurring = [it for it in items if _plan(it) in RECURRING_PLANS and it.cart_item_id]
        windows_by_key = {}
        if recurring:
            starts = [item_start_date(it, today) for it in recurring]
            pauses = effective_pauses(
                db,
                user_ids=[order.user_id],
                subscription_ids=[it.cart_item_id for it in recurring],
                from_iso=min(starts),
                to_iso=add_days_iso(max(starts), ACTIVATION_LOOKAHEAD_DAYS),
            )
            windows_by_key = pauses_by_key(pauses)

        for it in recurring:
            sid = it.cart_item_id
            dates = _weekday_dates(
                item_start_date(it, today),
                default_total_servings(it.plan),
                lookahead_days=ACTIVATION_LOOKAHEAD_DAYS,
                windows=windows_by_key.get((int(order.user_id), sid)),
            )
            time_hhmm = normalize_hhmm(it.delivery_time, DEFAULT_DELIVERY_TIME)
            snapshot = [item_snapshot(order, it)]
            for iso in dates:
                result, _ = insert_delivery(
                    db,
                    user_id=order.user_id,
                    subscription_id=sid,
                    order_id=order.id,
                    source_cart_item_id=sid,
                    date_iso=iso,
                    time_hhmm=time_hhmm,
                    items=snapshot,
                    address=address,
                )
                created += 1 if result.ok else 0

    order.moved_to_kitchen_at = now.replace(tzinfo=None)
    db.flush()
    logger.info("Order moved to kitchen: %s deliveriesCreated=%s", order.id, created)
    return created


def extend_schedule(
    db: Session,
    *,
    user_id: int,
    subscription_id: str,
    count: int,
    lookahead_days: int,
) -> int:
    """Append up to ``count`` PENDING deliveries after the current last scheduled date.

    New rows copy the last delivery (time, items, address), land on weekdays
    only and stay out of effective pause windows. Returns how many were added.
    """
    if count <= 0:
        return 0
    last = last_scheduled_delivery(db, user_id, subscription_id)
    if last is None:
        logger.warning(
            "No scheduled delivery to extend from: user=%s subscription=%s", user_id, subscription_id
        )
        return 0

    start_iso = add_days_iso(last.date, 1)
    windows = pause_windows_for(
        db,
        user_id=user_id,
        subscription_id=subscription_id,
        from_iso=start_iso,
        to_iso=add_days_iso(start_iso, lookahead_days),
    )
    dates = _weekday_dates(
        start_iso,
        count,
        lookahead_days=lookahead_days,
        windows=windows,
        taken=scheduled_dates(db, user_id, subscription_id),
    )

    added = 0
    for iso in dates:
        result, _ = clone_delivery(db, last, iso)
        if result.ok:
            added += 1
        else:
            logger.warning("Extension insert skipped (%s) for %s on %s", result.value, subscription_id, iso)
    if added < count:
        logger.warning(
            "Schedule extension short: wanted=%s added=%s subscription=%s", count, added, subscription_id
        )
    return added
