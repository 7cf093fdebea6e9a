from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.errors import service_errors
from auth.utils import get_current_user, require_non_admin
from config import settings
from db.database import get_db
from db.models import User
from services.delivery_store import serialize_delivery
from services.kitchen_service import list_my_deliveries

router = APIRouter(prefix="/deliveries", tags=["deliveries"], dependencies=[Depends(require_non_admin)])


@router.get("/mine")
def my_deliveries(
    from_date: Optional[str] = Query(default=None, alias="from"),
    to_date: Optional[str] = Query(default=None, alias="to"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with service_errors():
        rows = list_my_deliveries(
            db,
            user,
            from_date=from_date,
            to_date=to_date,
            max_range_days=settings.DELIVERY_LIST_MAX_RANGE_DAYS,
        )
    return [serialize_delivery(r) for r in rows]
