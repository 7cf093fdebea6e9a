from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from config import settings
from utils.datetime_utils import now_for_tz


@dataclass(frozen=True)
class Clock:
    """Source of "now" for request handlers; services only ever see the values it hands out."""

    tz_name: str
    fixed_now: datetime | None = None

    def now(self) -> datetime:
        if self.fixed_now is not None:
            return self.fixed_now
        return now_for_tz(self.tz_name)

    def today(self) -> date:
        return self.now().date()


def get_clock() -> Clock:
    return Clock(tz_name=settings.APP_TIMEZONE)
