from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.errors import service_errors
from api.schemas import (
    PauseRequestCreate,
    SkipRequestCreate,
    SubscriptionRecordCreate,
    WithdrawPauseRequestCreate,
)
from auth.utils import get_current_user, require_non_admin
from config import settings
from db.database import get_db
from db.models import User
from services.pause_skip_service import (
    create_pause_request,
    create_skip_request,
    create_withdraw_pause_request,
    list_my_requests,
    serialize_request,
    withdraw_my_request,
)
from services.subscription_record_service import create_subscription_record, list_my_records
from services.subscription_view_service import user_subscriptions, view_from_record
from utils.clock import Clock, get_clock

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_non_admin)])


@router.get("/requests")
def list_requests(
    status: Optional[str] = Query(default=None),
    request_type: Optional[str] = Query(default=None, alias="requestType"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        rows = list_my_requests(db, user, status=status, request_type=request_type)
    return [serialize_request(r) for r in rows]


@router.post("/pause-requests", status_code=201)
def create_pause(
    req: PauseRequestCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    with service_errors():
        row = create_pause_request(
            db,
            user,
            kind=req.kind,
            subscription_id=req.subscription_id,
            pause_start_date=req.pause_start_date,
            pause_end_date=req.pause_end_date,
            reason=req.reason,
            today=now.date(),
            now=now,
            cutoff_minutes=settings.pause_cutoff_minutes,
        )
    db.commit()
    return serialize_request(row)


@router.post("/withdraw-pause-requests", status_code=201)
def create_withdraw_pause(
    req: WithdrawPauseRequestCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        row = create_withdraw_pause_request(db, user, pause_request_id=req.pause_request_id)
    db.commit()
    return serialize_request(row)


@router.post("/skip-requests", status_code=201)
def create_skip(
    req: SkipRequestCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    with service_errors():
        row = create_skip_request(
            db,
            user,
            delivery_id=req.delivery_id,
            reason=req.reason,
            today=now.date(),
            now=now,
            cutoff_minutes=settings.skip_cutoff_minutes,
        )
    db.commit()
    return serialize_request(row)


@router.post("/requests/{request_id}/withdraw")
def withdraw_request(
    request_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        row = withdraw_my_request(db, user, request_id, now=clock.now())
    db.commit()
    return serialize_request(row)


@router.get("/mine")
def my_subscriptions(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return user_subscriptions(db, user.id, today=clock.today())


@router.get("/records")
def list_records(
    kind: Optional[str] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        return list_my_records(db, user, kind=kind, today=clock.today())


@router.post("/records", status_code=201)
def create_record(
    req: SubscriptionRecordCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        row = create_subscription_record(
            db,
            user,
            kind=req.kind,
            frequency=req.frequency,
            start_date=req.start_date,
            title=req.title,
            servings=req.servings,
            price=req.price,
            selections=req.selections,
            today=clock.today(),
        )
    db.commit()
    return view_from_record(row).to_dict()
