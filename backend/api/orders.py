from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.errors import service_errors
from auth.utils import get_current_user, require_non_admin
from db.database import get_db
from db.models import User
from services.order_service import USER_ORDERS_DEFAULT_LIMIT, USER_ORDERS_MAX_LIMIT, get_my_order, list_my_orders
from utils.clock import Clock, get_clock

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(require_non_admin)])


@router.get("/mine")
def my_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=USER_ORDERS_DEFAULT_LIMIT, ge=1, le=USER_ORDERS_MAX_LIMIT),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return list_my_orders(db, user, page=page, limit=limit, today=clock.today())


@router.get("/mine/{order_id}")
def my_order(
    order_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    with service_errors():
        return get_my_order(db, user, order_id, today=clock.today())
