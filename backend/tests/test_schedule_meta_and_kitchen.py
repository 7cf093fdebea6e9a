from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, build_engine, build_session_factory  # noqa: E402
from db.models import Delivery, PauseSkipRequest, User  # noqa: E402
from services.delivery_store import insert_delivery, load_json_list  # noqa: E402
from services.errors import ConflictError, NotFoundError, PolicyError  # noqa: E402
from services.kitchen_service import (  # noqa: E402
    kitchen_deliveries,
    list_my_deliveries,
    next_kitchen_status,
    update_kitchen_status,
)
from services.schedule_meta_service import meta_key, schedule_meta_by_pair  # noqa: E402


IST = ZoneInfo("Asia/Kolkata")
TODAY = date(2024, 1, 3)
NOW = datetime(2024, 1, 3, 9, 0, tzinfo=IST)
SID = "ci-weekly"


def _new_db():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)()


def _new_user(db, username: str = "meta_tester") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name=username.title(),
        contact_number="9000000001",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _seed(db, user, statuses: dict[str, str], sid: str = SID, time: str = "12:00") -> dict[str, Delivery]:
    rows = {}
    for day, status in statuses.items():
        _, row = insert_delivery(
            db, user_id=user.id, subscription_id=sid, order_id=None, source_cart_item_id=sid,
            date_iso=day, time_hhmm=time,
        )
        row.status = status
        rows[day] = row
    db.commit()
    return rows


def test_schedule_meta_aggregates_per_pair():
    db = _new_db()
    user = _new_user(db)
    other = _new_user(db, "other")
    _seed(
        db,
        user,
        {
            "2024-01-01": "DELIVERED",
            "2024-01-02": "DELIVERED",
            "2024-01-03": "SKIPPED",
            "2024-01-04": "COOKING",
            "2024-01-05": "PENDING",
            "2024-01-08": "PENDING",
        },
    )
    _seed(db, other, {"2024-02-01": "PENDING"})

    metas = schedule_meta_by_pair(db, [(user.id, SID), (user.id, "unknown")], today=TODAY)
    assert set(metas) == {meta_key(user.id, SID)}
    meta = metas[meta_key(user.id, SID)]
    assert meta.schedule_end_date == "2024-01-08"
    assert meta.next_serving_date == "2024-01-04"
    assert (meta.delivered_count, meta.skipped_count, meta.scheduled_count) == (2, 1, 6)
    assert meta.to_dict()["nextServingDate"] == "2024-01-04"


def test_next_serving_date_is_empty_when_nothing_left():
    db = _new_db()
    user = _new_user(db)
    _seed(db, user, {"2024-01-01": "DELIVERED", "2024-01-04": "SKIPPED"})

    meta = schedule_meta_by_pair(db, [(user.id, SID)], today=TODAY)[meta_key(user.id, SID)]
    assert meta.next_serving_date is None
    assert meta.schedule_end_date == "2024-01-04"
    assert schedule_meta_by_pair(db, [], today=TODAY) == {}


def test_next_kitchen_status_walks_pipeline():
    assert next_kitchen_status("PENDING") == "COOKING"
    assert next_kitchen_status("COOKING") == "PACKED"
    assert next_kitchen_status("PACKED") == "OUT_FOR_DELIVERY"
    assert next_kitchen_status("OUT_FOR_DELIVERY") == "DELIVERED"
    assert next_kitchen_status("DELIVERED") is None
    assert next_kitchen_status("SKIPPED") is None
    assert next_kitchen_status("bogus") is None


def test_kitchen_status_moves_forward_one_step_at_a_time():
    db = _new_db()
    user = _new_user(db)
    row = _seed(db, user, {"2024-01-03": "PENDING"})["2024-01-03"]

    with pytest.raises(PolicyError, match="Invalid transition from PENDING to PACKED"):
        update_kitchen_status(db, row.id, status="PACKED", today=TODAY, now=NOW)

    for status in ("COOKING", "PACKED", "OUT_FOR_DELIVERY", "DELIVERED"):
        updated, _ = update_kitchen_status(db, row.id, status=status, today=TODAY, now=NOW)
        db.commit()
        assert updated.status == status

    history = [h["status"] for h in load_json_list(db.get(Delivery, row.id).status_history)]
    assert history == ["PENDING", "COOKING", "PACKED", "OUT_FOR_DELIVERY", "DELIVERED"]
    with pytest.raises(PolicyError, match="final"):
        update_kitchen_status(db, row.id, status="DELIVERED", today=TODAY, now=NOW)


def test_kitchen_status_guards():
    db = _new_db()
    user = _new_user(db)
    rows = _seed(db, user, {"2024-01-03": "SKIPPED", "2024-01-04": "PENDING"})

    with pytest.raises(PolicyError, match="final"):
        update_kitchen_status(db, rows["2024-01-03"].id, status="COOKING", today=TODAY, now=NOW)
    with pytest.raises(PolicyError, match="Only today's deliveries"):
        update_kitchen_status(db, rows["2024-01-04"].id, status="COOKING", today=TODAY, now=NOW)
    with pytest.raises(NotFoundError):
        update_kitchen_status(db, 9999, status="COOKING", today=TODAY, now=NOW)
    with pytest.raises(ValueError, match="Invalid status"):
        update_kitchen_status(db, rows["2024-01-04"].id, status="EATEN", today=TODAY, now=NOW)
    with pytest.raises(ValueError, match="status is required"):
        update_kitchen_status(db, rows["2024-01-04"].id, status=None, today=TODAY, now=NOW)


def test_kitchen_update_same_status_is_a_no_op():
    db = _new_db()
    user = _new_user(db)
    row = _seed(db, user, {"2024-01-03": "COOKING"})["2024-01-03"]

    updated, previous = update_kitchen_status(db, row.id, status="COOKING", today=TODAY, now=NOW)
    assert (updated.status, previous) == ("COOKING", "COOKING")
    assert len(load_json_list(updated.status_history)) == 1


def test_kitchen_update_conflicts_with_concurrent_skip():
    db = _new_db()
    user = _new_user(db)
    row = _seed(db, user, {"2024-01-03": "PENDING"})["2024-01-03"]
    assert row.status == "PENDING"
    db.query(Delivery).filter(Delivery.id == row.id).update(
        {Delivery.status: "SKIPPED"}, synchronize_session=False
    )

    with pytest.raises(ConflictError):
        update_kitchen_status(db, row.id, status="COOKING", today=TODAY, now=NOW)
    assert row.status == "SKIPPED"


def test_kitchen_queue_hides_paused_subscriptions_and_carries_user():
    db = _new_db()
    user = _new_user(db)
    paused_user = _new_user(db, "paused")
    _seed(db, user, {"2024-01-03": "PENDING", "2024-01-04": "PENDING"}, time="13:00")
    _seed(db, paused_user, {"2024-01-03": "PENDING"}, sid="ci-paused", time="11:00")
    db.add(
        PauseSkipRequest(
            request_type="PAUSE", status="APPROVED", kind="mealPack", subscription_id="ci-paused",
            user_id=paused_user.id, pause_start_date="2024-01-03", pause_end_date="2024-01-05",
        )
    )
    db.commit()

    queue = kitchen_deliveries(db, date_iso=None, status=None, user_id=None, today=TODAY)
    assert [(d["userId"], d["date"]) for d in queue] == [(user.id, "2024-01-03")]
    assert queue[0]["user"] == {"id": user.id, "name": "Meta_Tester", "contactNumber": "9000000001"}
    assert kitchen_deliveries(db, date_iso="2024-01-04", status="COOKING", user_id=None, today=TODAY) == []
    with pytest.raises(ValueError):
        kitchen_deliveries(db, date_iso="2024/01/04", status=None, user_id=None, today=TODAY)


def test_my_deliveries_range_and_pause_filter():
    db = _new_db()
    user = _new_user(db)
    _seed(
        db,
        user,
        {"2024-01-01": "DELIVERED", "2024-01-02": "PENDING", "2024-01-03": "PENDING", "2024-01-04": "PENDING"},
    )
    db.add(
        PauseSkipRequest(
            request_type="PAUSE", status="APPROVED", kind="mealPack", subscription_id=SID,
            user_id=user.id, pause_start_date="2024-01-01", pause_end_date="2024-01-03",
        )
    )
    db.commit()

    rows = list_my_deliveries(db, user, from_date="2024-01-01", to_date="2024-01-07", max_range_days=31)
    assert [(r.date, r.status) for r in rows] == [("2024-01-01", "DELIVERED"), ("2024-01-04", "PENDING")]

    with pytest.raises(ValueError, match="required"):
        list_my_deliveries(db, user, from_date=None, to_date="2024-01-07", max_range_days=31)
    with pytest.raises(ValueError, match="Invalid from/to"):
        list_my_deliveries(db, user, from_date="2024-13-01", to_date="2024-01-07", max_range_days=31)
    with pytest.raises(ValueError, match="less than 31 days"):
        list_my_deliveries(db, user, from_date="2024-01-01", to_date="2024-02-01", max_range_days=31)
    with pytest.raises(ValueError, match="less than 31 days"):
        list_my_deliveries(db, user, from_date="2024-01-07", to_date="2024-01-01", max_range_days=31)
    assert len(list_my_deliveries(db, user, from_date="2024-01-01", to_date="2024-01-31", max_range_days=31)) == 2
