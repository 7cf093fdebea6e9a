"""DB-backed customMeal and addon subscription records."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import date

from sqlalchemy.orm import Session

from db.models import Subscription, User
from services.errors import NotFoundError
from services.subscription_view_service import FREQUENCIES, STATUSES, project_views, view_from_record
from utils.datetime_utils import parse_iso_date

logger = logging.getLogger(__name__)

RECORD_KINDS = ("customMeal", "addon")
MAX_ADDON_SERVINGS = 60


def _new_subscription_id(kind: str) -> str:
    prefix = "cm" if kind == "customMeal" else "ad"
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def create_subscription_record(
    db: Session,
    user: User,
    *,
    kind: str | None,
    frequency: str | None,
    start_date: str | None,
    title: str | None = None,
    servings: int | None = None,
    price: float | None = None,
    selections: list | None = None,
    today: date,
) -> Subscription:
    k = str(kind or "").strip()
    if k not in RECORD_KINDS:
        raise ValueError("Invalid kind")
    freq = str(frequency or "").strip().lower()
    if freq not in FREQUENCIES:
        raise ValueError("Invalid frequency")

    raw_start = str(start_date or "").strip()
    if raw_start:
        start = parse_iso_date(raw_start)
        if start is None:
            raise ValueError("Invalid startDate (expected YYYY-MM-DD)")
        if start < today:
            raise ValueError("startDate cannot be in the past")
    else:
        start = today

    count = None
    if k == "addon":
        try:
            count = int(servings) if servings is not None else None
        except (TypeError, ValueError):
            raise ValueError("servings must be a whole number")
        if count is None or count < 1 or count > MAX_ADDON_SERVINGS:
            raise ValueError(f"servings must be between 1 and {MAX_ADDON_SERVINGS}")

    row = Subscription(
        subscription_id=_new_subscription_id(k),
        user_id=user.id,
        kind=k,
        frequency=freq,
        status="active",
        title=" ".join(str(title or "").split()) or None,
        start_date=start.isoformat(),
        servings=count,
        price=float(price) if price is not None else None,
        selections=json.dumps(list(selections or []), ensure_ascii=True),
    )
    db.add(row)
    db.flush()
    logger.info("Subscription record created: %s %s for user %s", k, row.subscription_id, user.id)
    return row


def list_my_records(db: Session, user: User, *, kind: str | None = None, today: date) -> list[dict]:
    q = db.query(Subscription).filter(Subscription.user_id == user.id)
    k = str(kind or "").strip()
    if k:
        if k not in RECORD_KINDS:
            raise ValueError("Invalid kind")
        q = q.filter(Subscription.kind == k)
    rows = q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()
    return [v.to_dict() for v in project_views(db, [view_from_record(r) for r in rows], today=today)]


def find_record(db: Session, kind: str, ident: str) -> Subscription:
    if kind not in RECORD_KINDS:
        raise ValueError("Invalid kind")
    key = str(ident or "").strip()
    row = db.query(Subscription).filter(Subscription.kind == kind, Subscription.subscription_id == key).first()
    if row is None and key.isdigit():
        row = db.query(Subscription).filter(Subscription.kind == kind, Subscription.id == int(key)).first()
    if row is None:
        raise NotFoundError("Subscription not found")
    return row


def admin_set_record_status(db: Session, kind: str, ident: str, status: str | None) -> Subscription:
    """Manual active/paused override; pause window fields are left to the request flow."""
    st = str(status or "").strip()
    if st not in STATUSES:
        raise ValueError("Invalid status")
    row = find_record(db, kind, ident)
    row.status = st
    db.flush()
    logger.info("Subscription %s status set to %s", row.subscription_id, st)
    return row
