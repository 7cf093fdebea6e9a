from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from db.models import Delivery, User
from services.delivery_store import FINAL_STATUSES, KITCHEN_STATUSES, serialize_delivery, transition_status
from services.errors import ConflictError, NotFoundError, PolicyError
from services.pause_window_service import effective_pauses, is_paused_on, pauses_by_key
from utils.datetime_utils import parse_iso_date

logger = logging.getLogger(__name__)


def next_kitchen_status(current: str | None) -> str | None:
    """The single forward step from ``current``; SKIPPED is never reached this way."""
    try:
        idx = KITCHEN_STATUSES.index(str(current or "").strip())
    except ValueError:
        return None
    if idx + 1 >= len(KITCHEN_STATUSES):
        return None
    nxt = KITCHEN_STATUSES[idx + 1]
    return None if nxt == "SKIPPED" else nxt


def _pause_filter(db: Session, rows: list[Delivery], from_iso: str, to_iso: str, *, pending_only: bool):
    pairs = {(r.user_id, r.subscription_id) for r in rows if r.subscription_id}
    if not pairs:
        return rows
    pauses = effective_pauses(
        db,
        user_ids=[u for u, _ in pairs],
        subscription_ids=[s for _, s in pairs],
        from_iso=from_iso,
        to_iso=to_iso,
    )
    if not pauses:
        return rows
    by_key = pauses_by_key(pauses)
    kept = []
    for r in rows:
        windows = by_key.get((r.user_id, r.subscription_id)) if r.subscription_id else None
        if windows and (not pending_only or r.status == "PENDING") and is_paused_on(windows, r.date):
            continue
        kept.append(r)
    return kept


def list_my_deliveries(
    db: Session, user: User, *, from_date, to_date, max_range_days: int
) -> list[Delivery]:
    """Caller's deliveries in [from, to]; PENDING rows inside an effective pause are hidden."""
    from_s, to_s = str(from_date or "").strip(), str(to_date or "").strip()
    if not from_s or not to_s:
        raise ValueError("from and to are required (YYYY-MM-DD)")
    start, end = parse_iso_date(from_s), parse_iso_date(to_s)
    if start is None or end is None:
        raise ValueError("Invalid from/to date")
    diff_days = (end - start).days
    if diff_days < 0 or diff_days >= max_range_days:
        raise ValueError(f"Range must be less than {max_range_days} days")

    rows = (
        db.query(Delivery)
        .filter(
            Delivery.user_id == user.id,
            Delivery.date >= start.isoformat(),
            Delivery.date <= end.isoformat(),
        )
        .order_by(Delivery.date.asc(), Delivery.time.asc(), Delivery.id.asc())
        .all()
    )
    return _pause_filter(db, rows, start.isoformat(), end.isoformat(), pending_only=True)


def kitchen_deliveries(
    db: Session,
    *,
    date_iso: str | None,
    status: str | None,
    user_id: int | None,
    today: date,
) -> list[dict]:
    """The kitchen queue for one date, minus anything whose subscription is paused that day."""
    day = str(date_iso or "").strip() or today.isoformat()
    if parse_iso_date(day) is None:
        raise ValueError("Invalid date (expected YYYY-MM-DD)")
    st = str(status or "").strip()
    if st and st not in KITCHEN_STATUSES:
        raise ValueError("Invalid status")

    q = db.query(Delivery).filter(Delivery.date == day)
    if st:
        q = q.filter(Delivery.status == st)
    if user_id is not None:
        q = q.filter(Delivery.user_id == int(user_id))
    rows = q.order_by(Delivery.time.asc(), Delivery.created_at.asc(), Delivery.id.asc()).all()
    rows = _pause_filter(db, rows, day, day, pending_only=False)

    user_ids = {r.user_id for r in rows}
    users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
    out = []
    for r in rows:
        u = users.get(r.user_id)
        out.append(
            {
                **serialize_delivery(r),
                "user": {"id": u.id, "name": u.display_name or "-", "contactNumber": u.contact_number or ""}
                if u
                else None,
            }
        )
    return out


def update_kitchen_status(
    db: Session, delivery_id: int, *, status: str | None, today: date, now: datetime
) -> tuple[Delivery, str]:
    """Advance one of today's deliveries by exactly one kitchen step.

    Returns the row and the status it had before. Re-sending the current
    status is a no-op.
    """
    target = str(status or "").strip()
    if not target:
        raise ValueError("status is required")
    if target not in KITCHEN_STATUSES:
        raise ValueError("Invalid status")

    row = db.get(Delivery, delivery_id)
    if not row:
        raise NotFoundError("Delivery not found")
    if row.date != today.isoformat():
        raise PolicyError("Only today's deliveries can be updated by kitchen")

    current = row.status
    if current in FINAL_STATUSES:
        raise PolicyError(f"{current.title()} deliveries are final")
    if target == current:
        return row, current
    if target != next_kitchen_status(current):
        raise PolicyError(f"Invalid transition from {current} to {target}")

    result = transition_status(db, row, from_status=current, to_status=target, changed_by="KITCHEN", at=now)
    if not result.ok:
        raise ConflictError("Delivery status changed concurrently. Please retry.")
    logger.info("Kitchen delivery status changed: %s %s -> %s", row.id, current, target)
    return row, current
