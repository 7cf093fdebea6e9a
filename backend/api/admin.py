"""Admin endpoints: pause/skip decisions, order activation, kitchen queue, subscriptions, audit."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.errors import service_errors
from api.schemas import AcceptanceUpdateRequest, DecisionRequest, StatusUpdateRequest
from auth.utils import require_admin
from db.database import get_db
from db.models import User
from services.audit_service import recent_admin_actions, record_admin_action
from services.delivery_store import serialize_delivery
from services.kitchen_service import kitchen_deliveries, update_kitchen_status
from services.order_service import get_order, serialize_order, set_acceptance, set_lifecycle_status
from services.pause_skip_service import admin_list_requests, decide_request, serialize_request
from services.schedule_service import move_order_to_kitchen
from services.subscription_record_service import admin_set_record_status
from services.subscription_view_service import admin_list_subscriptions, view_from_record
from utils.clock import Clock, get_clock

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/pause-skip/requests")
def list_pause_skip_requests(
    status: Optional[str] = Query(default="PENDING"),
    request_type: Optional[str] = Query(default=None, alias="requestType"),
    kind: Optional[str] = Query(default=None),
    user_id: Optional[int] = Query(default=None, alias="userId"),
    limit: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    with service_errors():
        return admin_list_requests(
            db,
            status=status,
            request_type=request_type,
            kind=kind,
            user_id=user_id,
            limit=limit,
        )


@router.post("/pause-skip/requests/{request_id}/decide")
def decide_pause_skip_request(
    request_id: int,
    req: DecisionRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    with service_errors():
        row = decide_request(
            db,
            admin_user,
            request_id,
            status=req.status,
            admin_note=req.admin_note,
            today=now.date(),
            now=now,
        )
    record_admin_action(
        db,
        admin_user.id,
        "pause_skip.decide",
        target_user_id=row.user_id,
        details={"request_id": row.id, "request_type": row.request_type, "status": row.status},
    )
    db.commit()
    return serialize_request(row)


@router.post("/orders/{order_id}/move-to-kitchen")
def move_to_kitchen(
    order_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    with service_errors():
        order = get_order(db, order_id)
        created = move_order_to_kitchen(db, order, today=now.date(), now=now)
    record_admin_action(
        db,
        admin_user.id,
        "order.move_to_kitchen",
        target_user_id=order.user_id,
        details={"order_id": order.id, "deliveries_created": created},
    )
    db.commit()
    return {"order": serialize_order(order), "deliveriesCreated": created}


@router.post("/orders/{order_id}/acceptance")
def update_order_acceptance(
    order_id: int,
    req: AcceptanceUpdateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    with service_errors():
        order = set_acceptance(db, get_order(db, order_id), req.acceptance_status)
    record_admin_action(
        db,
        admin_user.id,
        "order.acceptance",
        target_user_id=order.user_id,
        details={"order_id": order.id, "acceptance_status": order.acceptance_status},
    )
    db.commit()
    return serialize_order(order)


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    req: StatusUpdateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        order = set_lifecycle_status(db, get_order(db, order_id), req.status, now=clock.now())
    record_admin_action(
        db,
        admin_user.id,
        "order.status",
        target_user_id=order.user_id,
        details={"order_id": order.id, "status": order.current_status},
    )
    db.commit()
    return serialize_order(order)


@router.get("/kitchen/deliveries")
def list_kitchen_deliveries(
    date: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user_id: Optional[int] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        return kitchen_deliveries(db, date_iso=date, status=status, user_id=user_id, today=clock.today())


@router.patch("/kitchen/deliveries/{delivery_id}/status")
def update_delivery_status(
    delivery_id: int,
    req: StatusUpdateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    with service_errors():
        row, previous = update_kitchen_status(db, delivery_id, status=req.status, today=now.date(), now=now)
    if previous != row.status:
        record_admin_action(
            db,
            admin_user.id,
            "kitchen.delivery_status",
            target_user_id=row.user_id,
            details={"delivery_id": row.id, "from": previous, "to": row.status},
        )
    db.commit()
    return serialize_delivery(row)


@router.get("/subscriptions")
def list_subscriptions(
    type_: Optional[str] = Query(default=None, alias="type"),
    frequency: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        views = admin_list_subscriptions(
            db, type_=type_, frequency=frequency, status=status, limit=limit, today=clock.today()
        )
    return [v.to_dict() for v in views]


@router.patch("/subscriptions/{kind}/{subscription_id}/status")
def update_subscription_status(
    kind: str,
    subscription_id: str,
    req: StatusUpdateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    with service_errors():
        row = admin_set_record_status(db, kind, subscription_id, req.status)
    record_admin_action(
        db,
        admin_user.id,
        "subscription.status",
        target_user_id=row.user_id,
        details={"subscription_id": row.subscription_id, "kind": row.kind, "status": row.status},
    )
    db.commit()
    return view_from_record(row).to_dict()


@router.get("/audit")
def get_admin_audit(
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return recent_admin_actions(db, limit=limit)
