"""Read-through projection of subscriptions.

Order-line subscriptions (meal packs) have no row of their own; they are
rebuilt from paid order items plus their delivery rows. DB-backed customMeal
and addon records are projected through the same code so every listing
reports cycle, progress, schedule and pause state identically.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session, selectinload

from db.models import Delivery, Order, Subscription
from services.cycle_service import (
    base_cycle_end,
    current_cycle_start,
    default_total_servings,
    extended_cycle_end,
    last_weekday_in_cycle,
    period_days,
)
from services.delivery_store import load_json_list
from services.pause_window_service import effective_pauses, latest_pause_by_key
from services.schedule_meta_service import ScheduleMeta, meta_key, schedule_meta_by_pair
from utils.datetime_utils import add_days_iso, is_weekday_iso, iso_between

FREQUENCIES = ("weekly", "monthly", "trial")
STATUSES = ("active", "paused")
TYPES = ("customMeal", "addon", "mealPack", "all")
MEAL_PACK_ITEM_TYPES = ("meal", "byo")
PAUSE_HORIZON_DAYS = 366
SKIP_LOOKAHEAD_PAD_DAYS = 60
ADMIN_LIST_DEFAULT_LIMIT = 100
ADMIN_LIST_MAX_LIMIT = 200


@dataclass(frozen=True)
class SubscriptionView:
    kind: str
    id: str
    user_id: int
    frequency: str
    status: str = "active"
    start_date: Optional[str] = None
    title: Optional[str] = None
    order_id: Optional[int] = None
    record_id: Optional[int] = None
    servings: Optional[int] = None
    price: Optional[float] = None
    selections: list = field(default_factory=list)
    delivery_time: Optional[str] = None
    created_at: Optional[datetime] = None
    pause_start_date: Optional[str] = None
    pause_end_date: Optional[str] = None
    pause_reason: Optional[str] = None
    pause_request_id: Optional[int] = None
    cycle_start_date: Optional[str] = None
    cycle_end_date: Optional[str] = None
    delivered: Optional[int] = None
    total: Optional[int] = None
    remaining: Optional[int] = None
    progress: Optional[float] = None
    schedule_end_date: Optional[str] = None
    next_serving_date: Optional[str] = None
    scheduled_count: Optional[int] = None
    skipped_count: Optional[int] = None

    @property
    def pair(self) -> tuple[int, str]:
        return (self.user_id, self.id)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.id,
            "userId": self.user_id,
            "frequency": self.frequency,
            "status": self.status,
            "startDate": self.start_date,
            "title": self.title,
            "orderId": self.order_id,
            "recordId": self.record_id,
            "servings": self.servings,
            "price": self.price,
            "selections": list(self.selections),
            "deliveryTime": self.delivery_time,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "pauseStartDate": self.pause_start_date,
            "pauseEndDate": self.pause_end_date,
            "pauseReason": self.pause_reason,
            "pauseRequestId": self.pause_request_id,
            "cycleStartDate": self.cycle_start_date,
            "cycleEndDate": self.cycle_end_date,
            "delivered": self.delivered,
            "total": self.total,
            "remaining": self.remaining,
            "progress": self.progress,
            "scheduleEndDate": self.schedule_end_date,
            "nextServingDate": self.next_serving_date,
            "scheduledCount": self.scheduled_count,
            "skippedCount": self.skipped_count,
        }


def _title_for(item) -> str:
    if item.title:
        return item.title
    if item.item_type == "meal":
        return "Meal Pack"
    if item.item_type == "byo":
        return "Build Your Own"
    return "Subscription"


def views_from_orders(orders: Iterable[Order], *, frequency: str | None = None) -> list[SubscriptionView]:
    """One ``mealPack`` view per recurring meal/byo line of a paid order, deduplicated by cart item."""
    seen: dict[str, SubscriptionView] = {}
    for order in orders:
        if str(order.payment_status or "").upper() != "PAID":
            continue
        for item in order.items or []:
            plan = str(item.plan or "").strip().lower()
            if plan not in FREQUENCIES or (frequency and plan != frequency):
                continue
            if item.item_type not in MEAL_PACK_ITEM_TYPES or not item.cart_item_id:
                continue
            if item.cart_item_id in seen:
                continue
            seen[item.cart_item_id] = SubscriptionView(
                kind="mealPack",
                id=item.cart_item_id,
                user_id=int(order.user_id),
                frequency=plan,
                start_date=item.start_date or None,
                title=_title_for(item),
                order_id=order.id,
                delivery_time=item.delivery_time,
                created_at=order.created_at,
            )
    return list(seen.values())


def view_from_record(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        kind=row.kind,
        id=row.subscription_id,
        user_id=int(row.user_id),
        frequency=row.frequency,
        status=row.status or "active",
        start_date=row.start_date,
        title=row.title,
        record_id=row.id,
        servings=row.servings,
        price=row.price,
        selections=load_json_list(row.selections),
        created_at=row.created_at,
        pause_start_date=row.pause_start_date,
        pause_end_date=row.pause_end_date,
        pause_reason=row.pause_reason,
        pause_request_id=row.pause_request_id,
    )


def total_servings_for(view: SubscriptionView) -> int:
    if view.kind == "addon" and view.servings and view.servings > 0:
        return int(view.servings)
    return default_total_servings(view.frequency)


def _progress(total: int, delivered_count: int) -> tuple[int, int, float]:
    delivered = max(0, min(total, delivered_count))
    remaining = max(0, total - delivered)
    progress = (delivered / total) * 100 if total > 0 else 0.0
    return delivered, remaining, progress


def _delivery_dates(db: Session, views: list[SubscriptionView]):
    """DELIVERED and SKIPPED dates plus the earliest scheduled date per (user, subscription)."""
    delivered: dict[tuple[int, str], list[str]] = defaultdict(list)
    skipped: dict[tuple[int, str], list[str]] = defaultdict(list)
    earliest: dict[tuple[int, str], str] = {}
    if not views:
        return delivered, skipped, earliest
    user_ids = sorted({v.user_id for v in views})
    sub_ids = sorted({v.id for v in views})
    rows = (
        db.query(Delivery.user_id, Delivery.subscription_id, Delivery.date, Delivery.status)
        .filter(Delivery.user_id.in_(user_ids), Delivery.subscription_id.in_(sub_ids))
        .all()
    )
    for uid, sid, d, status in rows:
        key = (int(uid), sid)
        if key not in earliest or d < earliest[key]:
            earliest[key] = d
        if status == "DELIVERED":
            delivered[key].append(d)
        elif status == "SKIPPED":
            skipped[key].append(d)
    return delivered, skipped, earliest


def project_views(db: Session, views: list[SubscriptionView], *, today: date) -> list[SubscriptionView]:
    """Attach cycle progress, schedule meta and effective pause state to each view.

    The cycle end stretches by one day per skipped date inside it; delivered
    counts weekday DELIVERED rows between the cycle start and that end.
    Schedule meta comes straight from the delivery rows. Status is ``paused``
    only while today sits inside the latest effective pause.
    """
    if not views:
        return []
    today_iso = today.isoformat()

    delivered_dates, skipped_dates, earliest = _delivery_dates(db, views)
    cycles: dict[tuple[int, str], tuple[str, str]] = {}
    for v in views:
        base_start = v.start_date or earliest.get(v.pair) or today_iso
        start = current_cycle_start(base_start, v.frequency, today)
        cycles[v.pair] = (start, base_cycle_end(start, v.frequency))

    metas = schedule_meta_by_pair(db, [v.pair for v in views], today=today)
    pauses = effective_pauses(
        db,
        user_ids=[v.user_id for v in views],
        subscription_ids=[v.id for v in views],
        from_iso=today_iso,
        to_iso=add_days_iso(today_iso, PAUSE_HORIZON_DAYS),
    )
    best_pause = latest_pause_by_key(pauses)

    out: list[SubscriptionView] = []
    for v in views:
        start, base_end = cycles[v.pair]
        pad_end = add_days_iso(base_end, SKIP_LOOKAHEAD_PAD_DAYS)
        skipped = [d for d in skipped_dates.get(v.pair, []) if start <= d <= pad_end]
        end = extended_cycle_end(base_end, start, skipped)
        delivered_count = sum(
            1 for d in delivered_dates.get(v.pair, []) if start <= d <= end and is_weekday_iso(d)
        )
        total = total_servings_for(v)
        delivered, remaining, progress = _progress(total, delivered_count)
        updates = dict(
            cycle_start_date=start,
            cycle_end_date=end,
            delivered=delivered,
            total=total,
            remaining=remaining,
            progress=progress,
        )

        meta: ScheduleMeta | None = metas.get(meta_key(*v.pair))
        if meta is not None:
            updates.update(
                schedule_end_date=meta.schedule_end_date,
                next_serving_date=meta.next_serving_date,
                scheduled_count=meta.scheduled_count,
                skipped_count=meta.skipped_count,
            )

        pause = best_pause.get(v.pair)
        if pause is None:
            updates.update(
                status="active",
                pause_start_date=None,
                pause_end_date=None,
                pause_reason=None,
                pause_request_id=None,
            )
        else:
            updates.update(
                status="paused" if iso_between(today_iso, pause.start, pause.end) else "active",
                pause_start_date=pause.start,
                pause_end_date=pause.end,
                pause_reason=pause.reason,
                pause_request_id=pause.request_id,
            )
        out.append(replace(v, **updates))
    return out


def serving_progress(
    view: SubscriptionView,
    *,
    delivered_dates: Iterable[str],
    first_delivery_date: str | None,
    schedule_meta: ScheduleMeta | None,
    today: date,
) -> dict:
    """Per-subscription progress card as the customer dashboard shows it.

    The displayed end date is the schedule's real last date when deliveries
    exist, otherwise the last weekday of the raw cycle.
    """
    today_iso = today.isoformat()
    start_iso = view.start_date or first_delivery_date or today_iso
    cycle_start = current_cycle_start(start_iso, view.frequency, today)
    raw_end = base_cycle_end(cycle_start, view.frequency)
    weekday_end = last_weekday_in_cycle(cycle_start, view.frequency)
    total = total_servings_for(view)
    count = sum(1 for d in delivered_dates if cycle_start <= d <= raw_end and is_weekday_iso(d))
    delivered, remaining, progress = _progress(total, count)
    schedule_end = schedule_meta.schedule_end_date if schedule_meta else None
    return {
        "total": total,
        "delivered": delivered,
        "remaining": remaining,
        "progress": progress,
        "startDate": start_iso,
        "cycleStartDate": cycle_start,
        "cycleEndDate": schedule_end or weekday_end,
        "scheduleEndDate": schedule_end,
        "nextServingDate": schedule_meta.next_serving_date if schedule_meta else None,
        "periodDays": period_days(view.frequency),
        "deliveryTime": view.delivery_time,
    }


def _parse_choice(value: str | None, allowed: tuple[str, ...], label: str) -> str | None:
    v = str(value or "").strip()
    if not v or v == "all":
        return None
    if v not in allowed:
        raise ValueError(f"Invalid {label}")
    return v


def _parse_limit(raw) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return ADMIN_LIST_DEFAULT_LIMIT
    return min(max(n, 1), ADMIN_LIST_MAX_LIMIT)


def _created_sort_key(v: SubscriptionView):
    return v.created_at or datetime.min


def admin_list_subscriptions(
    db: Session,
    *,
    type_: str | None = None,
    frequency: str | None = None,
    status: str | None = None,
    limit=None,
    today: date,
) -> list[SubscriptionView]:
    freq = _parse_choice(frequency, FREQUENCIES, "frequency")
    wanted_status = _parse_choice(status, STATUSES, "status")
    kind = str(type_ or "").strip() or "all"
    if kind not in TYPES:
        raise ValueError("Invalid type")
    lim = _parse_limit(limit) if limit is not None else ADMIN_LIST_DEFAULT_LIMIT

    views: list[SubscriptionView] = []
    if kind in ("customMeal", "addon", "all"):
        q = db.query(Subscription)
        if kind != "all":
            q = q.filter(Subscription.kind == kind)
        if freq:
            q = q.filter(Subscription.frequency == freq)
        rows = q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).limit(lim * 2).all()
        views.extend(view_from_record(r) for r in rows)
    if kind in ("mealPack", "all"):
        fetch = min(500, max(50, lim * 10))
        orders = (
            db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.payment_status == "PAID")
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(fetch)
            .all()
        )
        views.extend(views_from_orders(orders, frequency=freq))

    views.sort(key=_created_sort_key, reverse=True)
    projected = project_views(db, views[:lim], today=today)
    if wanted_status:
        projected = [v for v in projected if v.status == wanted_status]
    return projected


def user_subscriptions(db: Session, user_id: int, *, today: date) -> list[dict]:
    """The caller's subscriptions, each with its dashboard progress card."""
    orders = (
        db.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.user_id == user_id, Order.payment_status == "PAID")
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    records = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .all()
    )
    views = views_from_orders(orders) + [view_from_record(r) for r in records]
    views.sort(key=_created_sort_key, reverse=True)
    projected = project_views(db, views, today=today)

    metas = schedule_meta_by_pair(db, [v.pair for v in projected], today=today)
    delivered, _, earliest = _delivery_dates(db, projected)
    return [
        {
            **v.to_dict(),
            "servingProgress": serving_progress(
                v,
                delivered_dates=delivered.get(v.pair, []),
                first_delivery_date=earliest.get(v.pair),
                schedule_meta=metas.get(meta_key(*v.pair)),
                today=today,
            ),
        }
        for v in projected
    ]
