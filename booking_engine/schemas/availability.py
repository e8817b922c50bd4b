from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterator, Union

from pydantic import BaseModel, field_validator, model_validator

from booking_engine.utils.datetime import ensure_utc


class CellStatus(str, Enum):
    AVAILABLE = "available"
    HELD = "held"
    BOOKED = "booked"


class DateSpan(BaseModel, frozen=True):
    """Whole-day span, ``start`` inclusive and ``end`` exclusive."""

    start: date
    end: date

    @model_validator(mode="after")
    def _ordered(self) -> "DateSpan":
        if self.end <= self.start:
            raise ValueError("date span must end after it starts")
        return self

    def days(self) -> Iterator[date]:
        day = self.start
        while day < self.end:
            yield day
            day += timedelta(days=1)


class TimeSpan(BaseModel, frozen=True):
    """Exact instant span, ``start`` inclusive and ``end`` exclusive."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)  # type: ignore[return-value]

    @model_validator(mode="after")
    def _ordered(self) -> "TimeSpan":
        if self.end <= self.start:
            raise ValueError("time span must end after it starts")
        return self

    def days(self) -> Iterator[date]:
        """Calendar days (UTC) the span touches."""
        day = self.start.date()
        last = (self.end - timedelta(microseconds=1)).date()
        while day <= last:
            yield day
            day += timedelta(days=1)


Span = Union[DateSpan, TimeSpan]
