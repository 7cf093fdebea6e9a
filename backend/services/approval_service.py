"""Schedule side effects of an approved pause, skip or pause withdrawal.

Servings are conserved: a pause removes pending days and appends the same
number after the tail, a skip appends one replacement, and a withdrawal pulls
tail deliveries back into the freed days instead of creating new ones.

Nothing in here raises into the decision path. Outcomes that did not happen
(no tail to extend, no donor, a slot collision) are logged and skipped.
"""
from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from db.models import Delivery, PauseSkipRequest, Subscription
from services.delivery_store import (
    ORDER_SCOPE_MARKER,
    MutationResult,
    clone_delivery,
    last_scheduled_delivery,
    reassign_delivery_date,
    remove_pending_in_window,
    scheduled_dates,
    transition_status,
)
from services.pause_window_service import is_paused_on, pause_windows_for
from services.schedule_service import (
    PAUSE_EXTENSION_LOOKAHEAD_DAYS,
    SKIP_EXTENSION_LOOKAHEAD_DAYS,
    extend_schedule,
)
from utils.datetime_utils import add_days_iso, is_weekday_iso, iter_dates_iso

logger = logging.getLogger(__name__)

DB_BACKED_KINDS = ("customMeal", "addon")


def _db_backed_subscription(db: Session, kind: str | None, user_id: int, subscription_id: str | None):
    if kind not in DB_BACKED_KINDS or not subscription_id:
        return None
    return (
        db.query(Subscription)
        .filter(
            Subscription.subscription_id == subscription_id,
            Subscription.user_id == user_id,
            Subscription.kind == kind,
        )
        .first()
    )


def apply_pause(db: Session, req: PauseSkipRequest, *, today: date) -> dict:
    sid = str(req.subscription_id or "").strip()
    start = str(req.pause_start_date or "").strip()
    end = str(req.pause_end_date or "").strip()
    if not sid or not start or not end:
        return {"removed": 0, "added": 0}

    removed = remove_pending_in_window(db, req.user_id, sid, start, end)
    added = 0
    if removed > 0:
        added = extend_schedule(
            db,
            user_id=req.user_id,
            subscription_id=sid,
            count=removed,
            lookahead_days=PAUSE_EXTENSION_LOOKAHEAD_DAYS,
        )

    sub = _db_backed_subscription(db, req.kind, req.user_id, sid)
    if sub is not None:
        sub.pause_start_date = start
        sub.pause_end_date = end
        sub.pause_reason = req.reason
        sub.pause_request_id = req.id
        if start <= today.isoformat() <= end:
            sub.status = "paused"
    db.flush()
    logger.info("Pause %s applied: removed=%s added=%s subscription=%s", req.id, removed, added, sid)
    return {"removed": removed, "added": added}


def apply_skip(db: Session, req: PauseSkipRequest, *, now: datetime) -> dict:
    delivery = db.get(Delivery, req.delivery_id) if req.delivery_id is not None else None
    if delivery is None:
        logger.warning("Skip %s: delivery %s not found", req.id, req.delivery_id)
        return {"skipped": MutationResult.NOT_FOUND.value, "added": 0}
    if delivery.status != "PENDING":
        logger.warning("Skip %s: delivery %s is %s, not PENDING", req.id, delivery.id, delivery.status)
        return {"skipped": MutationResult.CONFLICT.value, "added": 0}

    result = transition_status(
        db, delivery, from_status="PENDING", to_status="SKIPPED", changed_by="ADMIN", at=now
    )
    if not result.ok:
        logger.warning("Skip %s: delivery %s changed concurrently", req.id, delivery.id)
        return {"skipped": result.value, "added": 0}

    sid = str(delivery.subscription_id or "").strip()
    if not sid or delivery.source_cart_item_id == ORDER_SCOPE_MARKER:
        return {"skipped": result.value, "added": 0}
    added = extend_schedule(
        db,
        user_id=delivery.user_id,
        subscription_id=sid,
        count=1,
        lookahead_days=SKIP_EXTENSION_LOOKAHEAD_DAYS,
    )
    return {"skipped": result.value, "added": added}


def shift_deliveries_into_window(
    db: Session, *, user_id: int, subscription_id: str, from_iso: str, to_iso: str
) -> int:
    """Fill empty weekdays in [from_iso, to_iso] with PENDING deliveries taken from after ``to_iso``.

    Donors are taken latest-first, so the tail that a pause appended is what
    moves back.
    """
    taken = scheduled_dates(db, user_id, subscription_id)
    windows = pause_windows_for(
        db, user_id=user_id, subscription_id=subscription_id, from_iso=from_iso, to_iso=to_iso
    )
    missing = [
        iso
        for iso in iter_dates_iso(from_iso, to_iso)
        if is_weekday_iso(iso) and iso not in taken and not is_paused_on(windows, iso)
    ]
    if not missing:
        return 0

    donors = (
        db.query(Delivery)
        .filter(
            Delivery.user_id == user_id,
            Delivery.subscription_id == subscription_id,
            Delivery.status == "PENDING",
            Delivery.date > to_iso,
        )
        .order_by(Delivery.date.desc(), Delivery.id.desc())
        .limit(len(missing) + 10)
        .all()
    )
    if not donors:
        logger.warning("No donor deliveries to shift for subscription %s", subscription_id)
        return 0

    shifted = 0
    pool = iter(donors)
    for target in missing:
        for donor in pool:
            result = reassign_delivery_date(db, donor.id, target)
            if result is MutationResult.OK:
                shifted += 1
                break
            logger.warning("Donor %s not moved to %s: %s", donor.id, target, result.value)
        else:
            break
    if shifted < len(missing):
        logger.warning(
            "Withdraw shift short: missing=%s shifted=%s subscription=%s", len(missing), shifted, subscription_id
        )
    return shifted


def top_up_upcoming(db: Session, *, user_id: int, subscription_id: str, today: date, days: int) -> int:
    """Fill weekday holes from today up to the current tail, within ``days``.

    Never schedules past the last existing delivery.
    """
    last = last_scheduled_delivery(db, user_id, subscription_id)
    if last is None:
        return 0
    first = (
        db.query(Delivery.date)
        .filter(Delivery.user_id == user_id, Delivery.subscription_id == subscription_id)
        .order_by(Delivery.date.asc())
        .first()
    )
    start = max(today.isoformat(), first[0])
    horizon = add_days_iso(start, max(days, 1) - 1)
    end = min(horizon, last.date)
    if end < start:
        return 0

    windows = pause_windows_for(
        db, user_id=user_id, subscription_id=subscription_id, from_iso=start, to_iso=end
    )
    taken = scheduled_dates(db, user_id, subscription_id)
    added = 0
    for iso in iter_dates_iso(start, end):
        if not is_weekday_iso(iso) or iso in taken or is_paused_on(windows, iso):
            continue
        result, _ = clone_delivery(db, last, iso)
        if result.ok:
            added += 1
    return added


def apply_withdraw_pause(db: Session, req: PauseSkipRequest, *, today: date) -> dict:
    pause = db.get(PauseSkipRequest, req.linked_to) if req.linked_to is not None else None
    if pause is None or pause.request_type != "PAUSE" or pause.status != "APPROVED":
        logger.warning("Withdraw %s: linked pause %s is not an approved pause", req.id, req.linked_to)
        return {"shifted": 0, "toppedUp": 0}

    sid = str(pause.subscription_id or "").strip()
    start = str(pause.pause_start_date or "").strip()
    end = str(pause.pause_end_date or "").strip()
    decided_iso = req.decided_on or today.isoformat()
    resume_from = max(decided_iso, start) if start else decided_iso

    shifted = 0
    if sid and end and resume_from <= end:
        shifted = shift_deliveries_into_window(
            db, user_id=pause.user_id, subscription_id=sid, from_iso=resume_from, to_iso=end
        )

    sub = _db_backed_subscription(db, pause.kind, pause.user_id, sid)
    if sub is not None:
        sub.status = "active"
        sub.pause_start_date = None
        sub.pause_end_date = None
        sub.pause_reason = None
        sub.pause_request_id = None

    topped_up = 0
    if sid:
        topped_up = top_up_upcoming(
            db,
            user_id=pause.user_id,
            subscription_id=sid,
            today=today,
            days=settings.UPCOMING_DELIVERY_TOPUP_DAYS,
        )
    db.flush()
    logger.info("Withdraw %s applied: shifted=%s toppedUp=%s subscription=%s", req.id, shifted, topped_up, sid)
    return {"shifted": shifted, "toppedUp": topped_up}


def apply_approval(db: Session, req: PauseSkipRequest, *, today: date, now: datetime) -> dict | None:
    """Run the side effects for an APPROVED request inside a savepoint.

    A database failure rolls back only the side effects; the decision itself
    stays recorded.
    """
    handlers = {
        "PAUSE": lambda: apply_pause(db, req, today=today),
        "SKIP": lambda: apply_skip(db, req, now=now),
        "WITHDRAW_PAUSE": lambda: apply_withdraw_pause(db, req, today=today),
    }
    handler = handlers.get(req.request_type)
    if handler is None:
        return None
    try:
        with db.begin_nested():
            return handler()
    except SQLAlchemyError as exc:
        logger.warning("Approval side effects failed for request %s (%s): %s", req.id, req.request_type, exc)
        return None
