from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, build_engine, build_session_factory  # noqa: E402
from db.models import Delivery, Order, OrderItem, PauseSkipRequest, Subscription, User  # noqa: E402
from services.approval_service import shift_deliveries_into_window  # noqa: E402
from services.delivery_store import (  # noqa: E402
    MutationResult,
    insert_delivery,
    load_json_list,
    reassign_delivery_date,
)
from services.pause_skip_service import decide_request  # noqa: E402
from services.pause_window_service import pause_windows_for  # noqa: E402
from services.schedule_service import move_order_to_kitchen  # noqa: E402


IST = ZoneInfo("Asia/Kolkata")
SID = "ci-weekly"


def _at(day: date, hour: int = 8) -> datetime:
    return datetime(day.year, day.month, day.day, hour, 0, tzinfo=IST)


def _new_db():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)()


def _new_user(db, username: str, role: str = "user") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name=username.title(),
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _weekly_subscription(db, user, start: str = "2024-01-01") -> Order:
    order = Order(user_id=user.id, payment_status="PAID", acceptance_status="CONFIRMED")
    order.items = [
        OrderItem(cart_item_id=SID, item_type="meal", plan="weekly", title="Thali", start_date=start, delivery_time="12:00")
    ]
    db.add(order)
    db.commit()
    move_order_to_kitchen(db, order, today=date(2024, 1, 1), now=_at(date(2024, 1, 1)))
    db.commit()
    return order


def _request(db, user, status: str = "PENDING", **fields) -> PauseSkipRequest:
    row = PauseSkipRequest(user_id=user.id, status=status, **fields)
    db.add(row)
    db.commit()
    return row


def _decide(db, admin, row, day: date, status: str = "APPROVED") -> PauseSkipRequest:
    out = decide_request(db, admin, row.id, status=status, admin_note=None, today=day, now=_at(day))
    db.commit()
    return out


def _schedule(db, sid: str = SID):
    rows = db.query(Delivery).filter(Delivery.subscription_id == sid).order_by(Delivery.date.asc()).all()
    return [(r.date, r.status) for r in rows]


def _owed(db, sid: str = SID) -> int:
    return db.query(Delivery).filter(Delivery.subscription_id == sid, Delivery.status != "SKIPPED").count()


def test_weekly_skip_appends_next_monday():
    db = _new_db()
    user = _new_user(db, "skipper")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    wednesday = db.query(Delivery).filter(Delivery.date == "2024-01-03").one()

    req = _request(db, user, request_type="SKIP", kind="delivery", subscription_id=SID, delivery_id=wednesday.id, skip_date="2024-01-03")
    decided = _decide(db, admin, req, date(2024, 1, 3))

    assert decided.status == "APPROVED"
    assert decided.decided_by == admin.id
    assert decided.decided_on == "2024-01-03"
    assert _schedule(db) == [
        ("2024-01-01", "PENDING"),
        ("2024-01-02", "PENDING"),
        ("2024-01-03", "SKIPPED"),
        ("2024-01-04", "PENDING"),
        ("2024-01-05", "PENDING"),
        ("2024-01-08", "PENDING"),
    ]
    assert _owed(db) == 5
    history = load_json_list(db.get(Delivery, wednesday.id).status_history)
    assert history[-1]["status"] == "SKIPPED"
    assert history[-1]["changedBy"] == "ADMIN"


def test_pause_conserves_servings_by_extending_tail():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)

    req = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )
    _decide(db, admin, req, date(2024, 1, 2))

    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-05", "2024-01-08", "2024-01-09"]
    assert _owed(db) == 5


def test_pause_extension_avoids_other_pause_windows():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-08", pause_end_date="2024-01-09", status="APPROVED",
    )

    req = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-04", pause_end_date="2024-01-05",
    )
    _decide(db, admin, req, date(2024, 1, 2))

    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-03", "2024-01-10", "2024-01-11"]


def test_pause_then_same_day_withdraw_pulls_tail_back():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    pause = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )
    _decide(db, admin, pause, date(2024, 1, 2))
    moved_ids = {
        r.id for r in db.query(Delivery).filter(Delivery.date.in_(["2024-01-08", "2024-01-09"])).all()
    }

    withdraw = _request(
        db, user, request_type="WITHDRAW_PAUSE", kind="mealPack", subscription_id=SID, linked_to=pause.id,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )
    _decide(db, admin, withdraw, date(2024, 1, 3))

    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-03", "2024-01-04", "2024-01-05"]
    assert _owed(db) == 5
    # The tail rows were moved, not recreated.
    back = {r.id for r in db.query(Delivery).filter(Delivery.date.in_(["2024-01-03", "2024-01-04"])).all()}
    assert back == moved_ids
    assert pause_windows_for(db, user_id=user.id, subscription_id=SID, from_iso="2024-01-01", to_iso="2024-01-31") == []


def test_mid_pause_withdraw_only_frees_remaining_days():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    pause = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-03", pause_end_date="2024-01-05",
    )
    _decide(db, admin, pause, date(2024, 1, 1))
    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-08", "2024-01-09", "2024-01-10"]

    withdraw = _request(
        db, user, request_type="WITHDRAW_PAUSE", kind="mealPack", subscription_id=SID, linked_to=pause.id,
        pause_start_date="2024-01-03", pause_end_date="2024-01-05",
    )
    _decide(db, admin, withdraw, date(2024, 1, 4))

    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-04", "2024-01-05", "2024-01-08"]
    windows = pause_windows_for(db, user_id=user.id, subscription_id=SID, from_iso="2024-01-01", to_iso="2024-01-31")
    assert [(w.start, w.end) for w in windows] == [("2024-01-03", "2024-01-03")]


def test_withdraw_does_not_refill_days_another_pause_still_covers():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    first = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )
    _decide(db, admin, first, date(2024, 1, 1))
    second = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-04", pause_end_date="2024-01-05",
    )
    _decide(db, admin, second, date(2024, 1, 1))
    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-08", "2024-01-09", "2024-01-10"]

    withdraw = _request(
        db, user, request_type="WITHDRAW_PAUSE", kind="mealPack", subscription_id=SID, linked_to=first.id,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )
    _decide(db, admin, withdraw, date(2024, 1, 2))

    assert [d for d, _ in _schedule(db)] == ["2024-01-01", "2024-01-02", "2024-01-03", "2024-01-08", "2024-01-09"]
    assert _owed(db) == 5
    windows = pause_windows_for(db, user_id=user.id, subscription_id=SID, from_iso="2024-01-01", to_iso="2024-01-31")
    assert [(w.start, w.end) for w in windows] == [("2024-01-04", "2024-01-05")]
    paused_pending = [d for d, s in _schedule(db) if s == "PENDING" and any(w.covers(d) for w in windows)]
    assert paused_pending == []


def test_declined_request_has_no_side_effects():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    req = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id=SID,
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )

    decided = _decide(db, admin, req, date(2024, 1, 2), status="DECLINED")
    assert decided.status == "DECLINED"
    assert len(_schedule(db)) == 5
    assert [d for d, _ in _schedule(db)][2] == "2024-01-03"


def test_pause_without_schedule_still_records_decision():
    db = _new_db()
    user = _new_user(db, "pauser")
    admin = _new_user(db, "chef", role="admin")
    req = _request(
        db, user, request_type="PAUSE", kind="mealPack", subscription_id="ci-unscheduled",
        pause_start_date="2024-01-03", pause_end_date="2024-01-04",
    )

    assert _decide(db, admin, req, date(2024, 1, 2)).status == "APPROVED"
    assert db.query(Delivery).count() == 0


def test_db_backed_pause_stamps_and_withdraw_clears_subscription():
    db = _new_db()
    user = _new_user(db, "addon_user")
    admin = _new_user(db, "chef", role="admin")
    sub = Subscription(subscription_id="ad_1", user_id=user.id, kind="addon", frequency="weekly", status="active", servings=3)
    db.add(sub)
    db.commit()
    for day in ("2024-01-01", "2024-01-02", "2024-01-03"):
        insert_delivery(
            db, user_id=user.id, subscription_id="ad_1", order_id=None, source_cart_item_id="ad_1",
            date_iso=day, time_hhmm="09:00",
        )
    db.commit()

    pause = _request(
        db, user, request_type="PAUSE", kind="addon", subscription_id="ad_1", reason="travel",
        pause_start_date="2024-01-02", pause_end_date="2024-01-03",
    )
    _decide(db, admin, pause, date(2024, 1, 2))
    db.refresh(sub)
    assert sub.status == "paused"
    assert (sub.pause_start_date, sub.pause_end_date, sub.pause_reason) == ("2024-01-02", "2024-01-03", "travel")
    assert sub.pause_request_id == pause.id
    assert [d for d, _ in _schedule(db, "ad_1")] == ["2024-01-01", "2024-01-04", "2024-01-05"]

    withdraw = _request(
        db, user, request_type="WITHDRAW_PAUSE", kind="addon", subscription_id="ad_1", linked_to=pause.id,
    )
    _decide(db, admin, withdraw, date(2024, 1, 3))
    db.refresh(sub)
    assert sub.status == "active"
    assert sub.pause_start_date is None and sub.pause_request_id is None
    assert [d for d, _ in _schedule(db, "ad_1")] == ["2024-01-01", "2024-01-03", "2024-01-04"]


def test_skip_of_combined_order_delivery_is_not_replaced():
    db = _new_db()
    user = _new_user(db, "one_off")
    admin = _new_user(db, "chef", role="admin")
    order = Order(user_id=user.id, payment_status="PAID", acceptance_status="CONFIRMED")
    order.items = [OrderItem(cart_item_id="ci-single", item_type="meal", plan="single", start_date="2024-01-02")]
    db.add(order)
    db.commit()
    move_order_to_kitchen(db, order, today=date(2024, 1, 1), now=_at(date(2024, 1, 1)))
    db.commit()
    delivery = db.query(Delivery).one()

    req = _request(db, user, request_type="SKIP", kind="delivery", delivery_id=delivery.id, skip_date=delivery.date)
    _decide(db, admin, req, date(2024, 1, 2))

    assert db.query(Delivery).count() == 1
    assert db.query(Delivery).one().status == "SKIPPED"


def test_skip_of_delivery_already_in_kitchen_leaves_it_alone():
    db = _new_db()
    user = _new_user(db, "late")
    admin = _new_user(db, "chef", role="admin")
    _weekly_subscription(db, user)
    monday = db.query(Delivery).filter(Delivery.date == "2024-01-01").one()
    req = _request(db, user, request_type="SKIP", kind="delivery", subscription_id=SID, delivery_id=monday.id)
    monday.status = "COOKING"
    db.commit()

    assert _decide(db, admin, req, date(2024, 1, 1)).status == "APPROVED"
    assert db.get(Delivery, monday.id).status == "COOKING"
    assert len(_schedule(db)) == 5


def test_reassign_delivery_date_checks_target_slot():
    db = _new_db()
    user = _new_user(db, "mover")
    _weekly_subscription(db, user)
    friday = db.query(Delivery).filter(Delivery.date == "2024-01-05").one()
    old_key = friday.group_key

    assert reassign_delivery_date(db, friday.id, "2024-01-04") is MutationResult.CONFLICT
    assert reassign_delivery_date(db, 999999, "2024-01-08") is MutationResult.NOT_FOUND
    assert reassign_delivery_date(db, friday.id, "2024-01-08") is MutationResult.OK
    db.commit()

    db.refresh(friday)
    assert friday.date == "2024-01-08"
    assert friday.group_key != old_key
    assert friday.group_key.endswith("|2024-01-08|12:00")

    friday.status = "DELIVERED"
    db.commit()
    assert reassign_delivery_date(db, friday.id, "2024-01-09") is MutationResult.NOT_FOUND


def test_shift_without_donors_is_a_no_op():
    db = _new_db()
    user = _new_user(db, "nodonor")
    _weekly_subscription(db, user)
    db.query(Delivery).filter(Delivery.date == "2024-01-03").delete()
    db.commit()

    shifted = shift_deliveries_into_window(
        db, user_id=user.id, subscription_id=SID, from_iso="2024-01-03", to_iso="2024-01-05"
    )
    assert shifted == 0
    assert len(_schedule(db)) == 4
