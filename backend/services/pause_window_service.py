from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from db.models import PauseSkipRequest
from utils.datetime_utils import add_days_iso, iso_between


PauseKey = tuple[int, str]


@dataclass(frozen=True)
class PauseWindow:
    request_id: int
    user_id: int
    subscription_id: str
    start: str
    end: str
    reason: str | None = None

    @property
    def key(self) -> PauseKey:
        return (self.user_id, self.subscription_id)

    def covers(self, iso: str) -> bool:
        return iso_between(iso, self.start, self.end)


def pause_key(user_id, subscription_id) -> PauseKey | None:
    sid = str(subscription_id or "").strip()
    if user_id is None or not sid:
        return None
    return (int(user_id), sid)


def _withdrawal_date(row: PauseSkipRequest) -> str:
    if row.decided_on:
        return str(row.decided_on)
    stamp = row.decided_at or row.created_at
    return stamp.date().isoformat() if stamp else ""


def effective_pauses(
    db: Session,
    *,
    user_ids: Iterable[int],
    subscription_ids: Iterable[str],
    from_iso: str,
    to_iso: str,
) -> list[PauseWindow]:
    """Approved pauses overlapping [from_iso, to_iso], truncated by approved withdrawals.

    A pause withdrawn on day D stays effective only through D-1; withdrawn on or
    before its start day it has no effective days at all.
    """
    uids = sorted({int(u) for u in user_ids if u is not None})
    sids = sorted({str(s).strip() for s in subscription_ids if str(s or "").strip()})
    if not uids or not sids or not from_iso or not to_iso:
        return []

    pauses = (
        db.query(PauseSkipRequest)
        .filter(
            PauseSkipRequest.request_type == "PAUSE",
            PauseSkipRequest.status == "APPROVED",
            PauseSkipRequest.user_id.in_(uids),
            PauseSkipRequest.subscription_id.in_(sids),
            PauseSkipRequest.pause_end_date >= from_iso,
            PauseSkipRequest.pause_start_date <= to_iso,
        )
        .order_by(PauseSkipRequest.id.asc())
        .all()
    )
    if not pauses:
        return []

    withdrawals = (
        db.query(PauseSkipRequest)
        .filter(
            PauseSkipRequest.request_type == "WITHDRAW_PAUSE",
            PauseSkipRequest.status == "APPROVED",
            PauseSkipRequest.linked_to.in_([p.id for p in pauses]),
        )
        .all()
    )
    withdrawn_on: dict[int, str] = {}
    for row in withdrawals:
        iso = _withdrawal_date(row)
        if not iso or row.linked_to is None:
            continue
        prev = withdrawn_on.get(int(row.linked_to))
        if prev is None or iso > prev:
            withdrawn_on[int(row.linked_to)] = iso

    out: list[PauseWindow] = []
    for p in pauses:
        start = str(p.pause_start_date or "").strip()
        end = str(p.pause_end_date or "").strip()
        if not start or not end:
            continue
        withdraw_iso = withdrawn_on.get(int(p.id))
        if withdraw_iso:
            truncated_end = add_days_iso(withdraw_iso, -1)
            if not truncated_end or truncated_end < start:
                continue
            end = min(end, truncated_end)
        if end < from_iso:
            continue
        out.append(
            PauseWindow(
                request_id=int(p.id),
                user_id=int(p.user_id),
                subscription_id=str(p.subscription_id),
                start=start,
                end=end,
                reason=p.reason,
            )
        )
    return out


def pauses_by_key(pauses: Iterable[PauseWindow]) -> dict[PauseKey, list[PauseWindow]]:
    grouped: dict[PauseKey, list[PauseWindow]] = defaultdict(list)
    for p in pauses:
        grouped[p.key].append(p)
    return dict(grouped)


def latest_pause_by_key(pauses: Iterable[PauseWindow]) -> dict[PauseKey, PauseWindow]:
    best: dict[PauseKey, PauseWindow] = {}
    for p in pauses:
        prev = best.get(p.key)
        if prev is None or p.end > prev.end:
            best[p.key] = p
    return best


def is_paused_on(windows: Iterable[PauseWindow] | None, iso: str) -> bool:
    return any(w.covers(iso) for w in windows or [])


def pause_windows_for(
    db: Session,
    *,
    user_id: int,
    subscription_id: str,
    from_iso: str,
    to_iso: str,
) -> list[PauseWindow]:
    key = pause_key(user_id, subscription_id)
    if key is None:
        return []
    pauses = effective_pauses(
        db,
        user_ids=[user_id],
        subscription_ids=[subscription_id],
        from_iso=from_iso,
        to_iso=to_iso,
    )
    return [p for p in pauses if p.key == key]
