from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, build_engine, build_session_factory  # noqa: E402
from db.models import PauseSkipRequest, User  # noqa: E402
from services.pause_window_service import (  # noqa: E402
    effective_pauses,
    is_paused_on,
    latest_pause_by_key,
    pause_windows_for,
)


SID = "ci-weekly-1"


def _new_db():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)()


def _new_user(db, username: str = "pause_tester") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name="Pause Tester",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _approved_pause(db, user, start: str, end: str, sid: str = SID) -> PauseSkipRequest:
    row = PauseSkipRequest(
        request_type="PAUSE",
        status="APPROVED",
        kind="mealPack",
        subscription_id=sid,
        user_id=user.id,
        pause_start_date=start,
        pause_end_date=end,
    )
    db.add(row)
    db.commit()
    return row


def _withdraw(db, user, pause: PauseSkipRequest, decided_on: str, status: str = "APPROVED") -> PauseSkipRequest:
    row = PauseSkipRequest(
        request_type="WITHDRAW_PAUSE",
        status=status,
        kind=pause.kind,
        subscription_id=pause.subscription_id,
        user_id=user.id,
        linked_to=pause.id,
        pause_start_date=pause.pause_start_date,
        pause_end_date=pause.pause_end_date,
        decided_on=decided_on if status == "APPROVED" else None,
    )
    db.add(row)
    db.commit()
    return row


def _windows(db, user, from_iso="2024-01-01", to_iso="2024-02-01"):
    return pause_windows_for(db, user_id=user.id, subscription_id=SID, from_iso=from_iso, to_iso=to_iso)


def test_approved_pause_without_withdrawal_is_fully_effective():
    db = _new_db()
    user = _new_user(db)
    _approved_pause(db, user, "2024-01-03", "2024-01-10")

    windows = _windows(db, user)
    assert [(w.start, w.end) for w in windows] == [("2024-01-03", "2024-01-10")]
    assert is_paused_on(windows, "2024-01-10")
    assert not is_paused_on(windows, "2024-01-11")


def test_mid_pause_withdrawal_truncates_to_day_before_decision():
    db = _new_db()
    user = _new_user(db)
    pause = _approved_pause(db, user, "2024-01-03", "2024-01-10")
    _withdraw(db, user, pause, decided_on="2024-01-05")

    windows = _windows(db, user)
    assert [(w.start, w.end) for w in windows] == [("2024-01-03", "2024-01-04")]
    assert not is_paused_on(windows, "2024-01-05")


def test_withdrawal_on_or_before_start_leaves_no_effective_days():
    db = _new_db()
    user = _new_user(db)
    same_day = _approved_pause(db, user, "2024-01-03", "2024-01-04")
    _withdraw(db, user, same_day, decided_on="2024-01-03")
    early = _approved_pause(db, user, "2024-01-15", "2024-01-19")
    _withdraw(db, user, early, decided_on="2024-01-02")

    assert _windows(db, user) == []


def test_pending_or_declined_withdrawal_does_not_truncate():
    db = _new_db()
    user = _new_user(db)
    pause = _approved_pause(db, user, "2024-01-03", "2024-01-10")
    _withdraw(db, user, pause, decided_on="2024-01-04", status="PENDING")

    assert [(w.start, w.end) for w in _windows(db, user)] == [("2024-01-03", "2024-01-10")]


def test_windows_ending_before_range_are_dropped_after_truncation():
    db = _new_db()
    user = _new_user(db)
    pause = _approved_pause(db, user, "2024-01-03", "2024-01-20")
    _withdraw(db, user, pause, decided_on="2024-01-06")

    assert _windows(db, user, from_iso="2024-01-08", to_iso="2024-01-31") == []
    assert len(_windows(db, user, from_iso="2024-01-05", to_iso="2024-01-31")) == 1


def test_pauses_are_scoped_to_user_and_subscription():
    db = _new_db()
    user = _new_user(db)
    other = _new_user(db, "someone_else")
    _approved_pause(db, other, "2024-01-03", "2024-01-10")
    _approved_pause(db, user, "2024-01-03", "2024-01-10", sid="ci-other-sub")

    assert _windows(db, user) == []


def test_latest_pause_wins_per_subscription():
    db = _new_db()
    user = _new_user(db)
    _approved_pause(db, user, "2024-01-03", "2024-01-05")
    later = _approved_pause(db, user, "2024-01-15", "2024-01-19")

    pauses = effective_pauses(
        db, user_ids=[user.id], subscription_ids=[SID], from_iso="2024-01-01", to_iso="2024-02-01"
    )
    best = latest_pause_by_key(pauses)
    assert best[(user.id, SID)].request_id == later.id
