"""Pause / skip / withdraw-pause requests: creation rules, self-withdrawal, admin decisions."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import Delivery, PauseSkipRequest, Subscription, User
from services.approval_service import apply_approval
from services.errors import ConflictError, NotFoundError, PolicyError
from services.pause_window_service import pause_windows_for
from utils.datetime_utils import (
    format_cutoff,
    is_within_cutoff,
    require_iso_date,
    scheduled_datetime,
    to_utc_naive,
)

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("PAUSE", "SKIP", "WITHDRAW_PAUSE")
REQUEST_STATUSES = ("PENDING", "APPROVED", "DECLINED", "WITHDRAWN")
PAUSABLE_KINDS = ("customMeal", "addon", "mealPack")
DB_BACKED_KINDS = ("customMeal", "addon")
DECISION_STATUSES = ("APPROVED", "DECLINED")
USER_LIST_LIMIT = 200
ADMIN_LIST_DEFAULT_LIMIT = 200
ADMIN_LIST_MAX_LIMIT = 500


def serialize_request(row: PauseSkipRequest) -> dict[str, Any]:
    return {
        "id": row.id,
        "requestType": row.request_type,
        "status": row.status,
        "kind": row.kind,
        "subscriptionId": row.subscription_id,
        "deliveryId": row.delivery_id,
        "linkedTo": row.linked_to,
        "userId": row.user_id,
        "reason": row.reason,
        "pauseStartDate": row.pause_start_date,
        "pauseEndDate": row.pause_end_date,
        "skipDate": row.skip_date,
        "decidedBy": row.decided_by,
        "decidedAt": row.decided_at.isoformat() if row.decided_at else None,
        "adminNote": row.admin_note,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def _clean(value) -> str | None:
    s = str(value or "").strip()
    return s or None


def _insert_request(db: Session, row: PauseSkipRequest, duplicate_message: str) -> PauseSkipRequest:
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        raise PolicyError(duplicate_message)
    return row


def _claim_pending(db: Session, row: PauseSkipRequest, values: dict) -> None:
    """Write ``values`` only if ``row`` is still PENDING in storage."""
    updated = (
        db.query(PauseSkipRequest)
        .filter(PauseSkipRequest.id == row.id, PauseSkipRequest.status == "PENDING")
        .update(values, synchronize_session=False)
    )
    db.refresh(row)
    if not updated:
        raise ConflictError("Request status changed concurrently. Please retry.")


def create_pause_request(
    db: Session,
    user: User,
    *,
    kind: str | None,
    subscription_id: str | None,
    pause_start_date,
    pause_end_date,
    reason: str | None,
    today: date,
    now: datetime,
    cutoff_minutes: int,
) -> PauseSkipRequest:
    kind = str(kind or "").strip()
    sid = _clean(subscription_id)
    start = require_iso_date(pause_start_date, "pauseStartDate")
    end = require_iso_date(pause_end_date, "pauseEndDate")
    if not sid:
        raise ValueError("subscriptionId is required")
    if kind not in PAUSABLE_KINDS:
        raise ValueError("Invalid kind")
    if end < start:
        raise ValueError("pauseEndDate must be on/after pauseStartDate")
    if start < today.isoformat():
        raise ValueError("pauseStartDate must be today or later")

    if kind in DB_BACKED_KINDS:
        sub = (
            db.query(Subscription)
            .filter(
                Subscription.subscription_id == sid,
                Subscription.user_id == user.id,
                Subscription.kind == kind,
            )
            .first()
        )
        if not sub:
            raise NotFoundError("Subscription not found")
        if str(sub.status or "").strip().lower() != "active":
            raise PolicyError("Pause is available only for active subscriptions")

    next_delivery = (
        db.query(Delivery)
        .filter(
            Delivery.user_id == user.id,
            Delivery.subscription_id == sid,
            Delivery.status == "PENDING",
            Delivery.date >= today.isoformat(),
        )
        .order_by(Delivery.date.asc(), Delivery.time.asc())
        .first()
    )
    if next_delivery:
        scheduled = scheduled_datetime(next_delivery.date, next_delivery.time, now.tzinfo)
        if scheduled and is_within_cutoff(now, scheduled, cutoff_minutes):
            raise PolicyError(
                f"Pause requests must be submitted at least {format_cutoff(cutoff_minutes)} before delivery."
            )

    row = PauseSkipRequest(
        request_type="PAUSE",
        status="PENDING",
        kind=kind,
        subscription_id=sid,
        user_id=user.id,
        reason=_clean(reason),
        pause_start_date=start,
        pause_end_date=end,
    )
    db.add(row)
    db.flush()
    return row


def create_skip_request(
    db: Session,
    user: User,
    *,
    delivery_id,
    reason: str | None,
    today: date,
    now: datetime,
    cutoff_minutes: int,
) -> PauseSkipRequest:
    try:
        did = int(delivery_id)
    except (TypeError, ValueError):
        raise ValueError("Invalid deliveryId")

    delivery = db.get(Delivery, did)
    if not delivery or delivery.user_id != user.id:
        raise NotFoundError("Delivery not found")
    if delivery.date != today.isoformat():
        raise PolicyError("Skip is available only for today's delivery")
    if delivery.status != "PENDING":
        raise PolicyError("Only pending deliveries can be skipped")

    if delivery.subscription_id:
        windows = pause_windows_for(
            db,
            user_id=user.id,
            subscription_id=delivery.subscription_id,
            from_iso=delivery.date,
            to_iso=delivery.date,
        )
        if windows:
            raise PolicyError("Skip is not available for paused subscriptions")

    scheduled = scheduled_datetime(delivery.date, delivery.time, now.tzinfo)
    if scheduled is None:
        raise PolicyError("Delivery scheduled time is unavailable for this delivery")
    if is_within_cutoff(now, scheduled, cutoff_minutes):
        raise PolicyError(f"Skip requests must be made at least {format_cutoff(cutoff_minutes)} before delivery.")

    duplicate = "A skip request is already pending for this delivery"
    already = (
        db.query(PauseSkipRequest.id)
        .filter(
            PauseSkipRequest.request_type == "SKIP",
            PauseSkipRequest.delivery_id == did,
            PauseSkipRequest.status.in_(("PENDING", "APPROVED")),
        )
        .first()
    )
    if already:
        raise PolicyError(duplicate)

    row = PauseSkipRequest(
        request_type="SKIP",
        status="PENDING",
        kind="delivery",
        subscription_id=delivery.subscription_id,
        delivery_id=did,
        user_id=user.id,
        reason=_clean(reason),
        skip_date=delivery.date,
    )
    return _insert_request(db, row, duplicate)


def create_withdraw_pause_request(db: Session, user: User, *, pause_request_id) -> PauseSkipRequest:
    try:
        pid = int(pause_request_id)
    except (TypeError, ValueError):
        raise ValueError("pauseRequestId is required")

    pause = db.get(PauseSkipRequest, pid)
    if not pause or pause.user_id != user.id:
        raise NotFoundError("Pause request not found")
    if pause.request_type != "PAUSE":
        raise ValueError("pauseRequestId must reference a PAUSE request")
    if pause.status != "APPROVED":
        raise PolicyError("Only approved pauses can be withdrawn")

    duplicate = "A withdraw request is already pending"
    pending = (
        db.query(PauseSkipRequest.id)
        .filter(
            PauseSkipRequest.request_type == "WITHDRAW_PAUSE",
            PauseSkipRequest.linked_to == pause.id,
            PauseSkipRequest.status == "PENDING",
        )
        .first()
    )
    if pending:
        raise PolicyError(duplicate)

    row = PauseSkipRequest(
        request_type="WITHDRAW_PAUSE",
        status="PENDING",
        kind=pause.kind,
        subscription_id=pause.subscription_id,
        user_id=user.id,
        linked_to=pause.id,
        pause_start_date=pause.pause_start_date,
        pause_end_date=pause.pause_end_date,
    )
    return _insert_request(db, row, duplicate)


def list_my_requests(
    db: Session, user: User, *, status: str | None = None, request_type: str | None = None
) -> list[PauseSkipRequest]:
    q = db.query(PauseSkipRequest).filter(PauseSkipRequest.user_id == user.id)
    if _clean(status):
        q = q.filter(PauseSkipRequest.status == status.strip().upper())
    if _clean(request_type):
        q = q.filter(PauseSkipRequest.request_type == request_type.strip().upper())
    return (
        q.order_by(PauseSkipRequest.created_at.desc(), PauseSkipRequest.id.desc())
        .limit(USER_LIST_LIMIT)
        .all()
    )


def withdraw_my_request(db: Session, user: User, request_id: int, *, now: datetime) -> PauseSkipRequest:
    row = db.get(PauseSkipRequest, request_id)
    if not row or row.user_id != user.id:
        raise NotFoundError("Request not found")
    if row.status != "PENDING":
        raise PolicyError("Only pending requests can be withdrawn")
    _claim_pending(
        db,
        row,
        {
            PauseSkipRequest.status: "WITHDRAWN",
            PauseSkipRequest.decided_at: to_utc_naive(now),
            PauseSkipRequest.updated_at: to_utc_naive(now),
        },
    )
    return row


def _contact(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "name": user.display_name or "-",
        "email": user.email or "",
        "contactNumber": user.contact_number or "",
        "addressLine1": user.address_line1 or "",
        "addressLine2": user.address_line2 or "",
        "pincode": user.pincode or "",
    }


def admin_list_requests(
    db: Session,
    *,
    status: str | None = "PENDING",
    request_type: str | None = None,
    kind: str | None = None,
    user_id: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Decision queue, newest first, each row carrying the requester's contact details."""
    lim = ADMIN_LIST_DEFAULT_LIMIT if limit is None else min(max(int(limit), 1), ADMIN_LIST_MAX_LIMIT)
    q = db.query(PauseSkipRequest)
    if _clean(status):
        q = q.filter(PauseSkipRequest.status == status.strip().upper())
    if _clean(request_type):
        q = q.filter(PauseSkipRequest.request_type == request_type.strip().upper())
    if _clean(kind):
        q = q.filter(PauseSkipRequest.kind == kind.strip())
    if user_id is not None:
        q = q.filter(PauseSkipRequest.user_id == int(user_id))
    rows = q.order_by(PauseSkipRequest.created_at.desc(), PauseSkipRequest.id.desc()).limit(lim).all()

    user_ids = {r.user_id for r in rows if r.user_id is not None}
    users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
    return [{**serialize_request(r), "user": _contact(users.get(r.user_id))} for r in rows]


def decide_request(
    db: Session,
    admin: User,
    request_id: int,
    *,
    status: str | None,
    admin_note: str | None,
    today: date,
    now: datetime,
) -> PauseSkipRequest:
    """Record an admin decision, then run the approval side effects.

    The decision is written first; scheduling side effects are best-effort and
    never undo it.
    """
    next_status = str(status or "").strip().upper()
    if next_status not in DECISION_STATUSES:
        raise ValueError("status must be APPROVED or DECLINED")

    row = db.get(PauseSkipRequest, request_id)
    if not row:
        raise NotFoundError("Request not found")
    if row.status != "PENDING":
        raise PolicyError("Only pending requests can be decided")

    _claim_pending(
        db,
        row,
        {
            PauseSkipRequest.status: next_status,
            PauseSkipRequest.decided_by: admin.id,
            PauseSkipRequest.decided_at: to_utc_naive(now),
            PauseSkipRequest.decided_on: today.isoformat(),
            PauseSkipRequest.admin_note: _clean(admin_note),
            PauseSkipRequest.updated_at: to_utc_naive(now),
        },
    )
    logger.info("Pause/skip request %s %s -> %s by admin %s", row.id, row.request_type, next_status, admin.id)

    if next_status == "APPROVED":
        apply_approval(db, row, today=today, now=now)
    return row
