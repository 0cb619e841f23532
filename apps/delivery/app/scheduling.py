"""
Next-delivery-slot computation from a shop's weekly shipping schedule.

A shop ships once a day at a fixed local time on a set of weekdays. An
order placed now is promised the earliest shipping instant that is on an
allowed weekday and still at least the cutoff buffer away.
"""
from __future__ import annotations

import re
from datetime import datetime, time, timedelta
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator

from . import config

DAY_KEYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]  # index == datetime.weekday()

_DAY_NAMES = {
    "th": ["จันทร์", "อังคาร", "พุธ", "พฤหัสบดี", "ศุกร์", "เสาร์", "อาทิตย์"],
    "en": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"],
}
_MONTH_NAMES = {
    "th": ["ม.ค.", "ก.พ.", "มี.ค.", "เม.ย.", "พ.ค.", "มิ.ย.", "ก.ค.", "ส.ค.", "ก.ย.", "ต.ค.", "พ.ย.", "ธ.ค."],
    "en": ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"],
}
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ShopSchedule(BaseModel):
    weekdays: List[str] = Field(min_length=1)
    shipping_time: str = config.DEFAULT_SHIPPING_TIME
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None

    @field_validator("weekdays")
    @classmethod
    def _known_days(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for d in v:
            key = (d or "").strip().lower()[:3]
            if key not in DAY_KEYS:
                raise ValueError(f"unknown weekday {d!r}")
            if key not in out:
                out.append(key)
        return out

    @field_validator("shipping_time")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        if not _TIME_RE.match((v or "").strip()):
            raise ValueError("shipping_time must be HH:MM")
        return v.strip()

    @property
    def weekday_numbers(self) -> set[int]:
        return {DAY_KEYS.index(d) for d in self.weekdays}

    @property
    def time_of_day(self) -> time:
        hh, mm = self.shipping_time.split(":")
        return time(int(hh), int(mm))

    @classmethod
    def from_seller(cls, days: Optional[Iterable[str]], shipping_time: Optional[str], lat=None, lng=None) -> "ShopSchedule":
        return cls(
            weekdays=list(days or config.DEFAULT_SHIPPING_DAYS),
            shipping_time=shipping_time or config.DEFAULT_SHIPPING_TIME,
            pickup_lat=lat,
            pickup_lng=lng,
        )


class DeliverySlot(BaseModel):
    at: datetime
    date_label: str
    time_label: str
    label: str

    @property
    def date_iso(self) -> str:
        return self.at.date().isoformat()


def shop_tz() -> ZoneInfo:
    return ZoneInfo(config.SHOP_TIMEZONE)


def _localize(now: datetime, tz: ZoneInfo) -> datetime:
    # Naive "now" is taken to already be shop-local wall time.
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def format_slot(at: datetime, locale: Optional[str] = None) -> DeliverySlot:
    loc = (locale or config.SLOT_LOCALE).lower()
    if loc not in _DAY_NAMES:
        loc = "en"
    day = _DAY_NAMES[loc][at.weekday()]
    month = _MONTH_NAMES[loc][at.month - 1]
    if loc == "th":
        date_label = f"วัน{day}ที่ {at.day} {month}"
    else:
        date_label = f"{day} {at.day} {month}"
    time_label = at.strftime("%H:%M")
    return DeliverySlot(at=at, date_label=date_label, time_label=time_label, label=f"{date_label} {time_label}")


def next_delivery_slot(
    schedule: ShopSchedule,
    now: Optional[datetime] = None,
    *,
    cutoff: Optional[timedelta] = None,
    horizon_days: Optional[int] = None,
    locale: Optional[str] = None,
) -> DeliverySlot:
    tz = shop_tz()
    local_now = _localize(now or datetime.now(tz), tz)
    cutoff = cutoff if cutoff is not None else timedelta(hours=config.CUTOFF_HOURS)
    horizon = horizon_days if horizon_days is not None else config.HORIZON_DAYS
    allowed = schedule.weekday_numbers
    ship_at = schedule.time_of_day

    for i in range(horizon):
        day = local_now.date() + timedelta(days=i)
        if day.weekday() not in allowed:
            continue
        candidate = datetime.combine(day, ship_at, tzinfo=tz)
        # Later days clear the buffer trivially unless the shipping time
        # sits just after midnight, so every candidate is checked.
        if local_now < candidate - cutoff:
            return format_slot(candidate, locale)

    # Unreachable with a valid schedule and a horizon of at least 8 days.
    fallback = datetime.combine(local_now.date() + timedelta(days=7), ship_at, tzinfo=tz)
    return format_slot(fallback, locale)
