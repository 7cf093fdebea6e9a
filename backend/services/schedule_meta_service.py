from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from db.models import Delivery
from services.delivery_store import ACTIVE_STATUSES


_SENTINEL = "9999-12-31"


@dataclass(frozen=True)
class ScheduleMeta:
    user_id: int
    subscription_id: str
    schedule_end_date: Optional[str]
    next_serving_date: Optional[str]
    delivered_count: int
    skipped_count: int
    scheduled_count: int

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "userId": data["user_id"],
            "subscriptionId": data["subscription_id"],
            "scheduleEndDate": data["schedule_end_date"],
            "nextServingDate": data["next_serving_date"],
            "deliveredCount": data["delivered_count"],
            "skippedCount": data["skipped_count"],
            "scheduledCount": data["scheduled_count"],
        }


def meta_key(user_id, subscription_id) -> str:
    return f"{user_id}|{str(subscription_id or '').strip()}"


def schedule_meta_by_pair(
    db: Session, pairs: Iterable[tuple[int, str]], *, today: date
) -> dict[str, ScheduleMeta]:
    """Aggregate delivery rows per (user, subscription), keyed ``"{userId}|{subscriptionId}"``.

    ``scheduleEndDate`` counts every row (delivered and skipped included);
    ``nextServingDate`` only rows still in the kitchen pipeline from today on.
    """
    wanted = {(int(u), str(s).strip()) for u, s in pairs if u is not None and str(s or "").strip()}
    if not wanted:
        return {}
    user_ids = sorted({u for u, _ in wanted})
    sub_ids = sorted({s for _, s in wanted})
    today_iso = today.isoformat()

    next_serving = func.min(
        case(
            (
                (Delivery.date >= today_iso) & Delivery.status.in_(ACTIVE_STATUSES),
                Delivery.date,
            ),
            else_=_SENTINEL,
        )
    )
    rows = (
        db.query(
            Delivery.user_id,
            Delivery.subscription_id,
            func.max(Delivery.date),
            next_serving,
            func.sum(case((Delivery.status == "DELIVERED", 1), else_=0)),
            func.sum(case((Delivery.status == "SKIPPED", 1), else_=0)),
            func.count(Delivery.id),
        )
        .filter(Delivery.user_id.in_(user_ids), Delivery.subscription_id.in_(sub_ids))
        .group_by(Delivery.user_id, Delivery.subscription_id)
        .all()
    )

    out: dict[str, ScheduleMeta] = {}
    for uid, sid, end_date, next_date, delivered, skipped, scheduled in rows:
        if (int(uid), sid) not in wanted:
            continue
        out[meta_key(uid, sid)] = ScheduleMeta(
            user_id=int(uid),
            subscription_id=sid,
            schedule_end_date=end_date or None,
            next_serving_date=next_date if next_date and next_date != _SENTINEL else None,
            delivered_count=int(delivered or 0),
            skipped_count=int(skipped or 0),
            scheduled_count=int(scheduled or 0),
        )
    return out
