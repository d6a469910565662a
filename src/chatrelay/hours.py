"""Support-hours calendar and closed-hours reply selection."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MAX_LOOKAHEAD_DAYS = 30
DEFAULT_HOLIDAY_NAME = "Día festivo"
CLOSED_REASON_TEXT = "Estamos fuera del horario de atención 😕"

_SPANISH_WEEKDAYS = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")
_SPANISH_MONTHS = (
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
)


class ClosedReason(StrEnum):
    HOLIDAY = "holiday"
    WEEKEND = "weekend"
    BEFORE_HOURS = "beforeHours"
    AFTER_HOURS = "afterHours"


class DayWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: time
    end: time

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> Any:
        if isinstance(value, str):
            return datetime.strptime(value.strip(), "%H:%M").time()
        return value


class Closure(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    day: date = Field(alias="date")
    name: str = DEFAULT_HOLIDAY_NAME


class ReplyTemplates(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    holiday: str = Field(
        default=(
            "¡Hola! 👋 Hoy es {holidayName} y nuestro equipo de atención no está disponible. "
            "Te responderemos el {nextBusinessDay}. ¡Gracias por tu paciencia!"
        )
    )
    weekend_or_extended: str = Field(
        default="¡Hola! 👋 {reason}. Te atenderemos el {nextBusinessDay}. ¡Gracias por escribirnos!",
        alias="weekendOrExtended",
    )
    out_of_hours: str = Field(
        default=(
            "¡Hola! 👋 Ahora mismo estamos fuera del horario de atención (L-V de 8:00 a 16:00). "
            "Te responderemos lo antes posible."
        ),
        alias="outOfHours",
    )


def _default_week() -> dict[str, DayWindow | None]:
    weekday = DayWindow(start=time(8, 0), end=time(16, 0))
    return {name: (weekday if index < 5 else None) for index, name in enumerate(WEEKDAYS)}


class BusinessHoursConfig(BaseModel):
    """Weekly schedule, closures and reply templates.

    Accepts the JSON layout with camelCase keys, optionally wrapped in a
    top-level ``businessHours`` object.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timezone: str = "Europe/Madrid"
    regular_hours: dict[str, DayWindow | None] = Field(default_factory=_default_week, alias="regularHours")
    holidays: dict[str, list[Closure]] = Field(default_factory=dict)
    exceptional_closures: list[Closure] = Field(default_factory=list, alias="exceptionalClosures")
    auto_reply_messages: ReplyTemplates = Field(default_factory=ReplyTemplates, alias="autoReplyMessages")

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("businessHours"), dict):
            return data["businessHours"]
        return data

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value

    @field_validator("regular_hours")
    @classmethod
    def _known_days(cls, value: dict[str, DayWindow | None]) -> dict[str, DayWindow | None]:
        normalized = {key.lower(): window for key, window in value.items()}
        unknown = set(normalized) - set(WEEKDAYS)
        if unknown:
            raise ValueError(f"unknown weekday names: {sorted(unknown)}")
        return normalized

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def closure_name(self, day: date) -> str | None:
        """Name of the holiday or exceptional closure on `day`, if any."""
        for closures in self.holidays.values():
            for closure in closures:
                if closure.day == day:
                    return closure.name
        for closure in self.exceptional_closures:
            if closure.day == day:
                return closure.name
        return None

    def window_for(self, day: date) -> DayWindow | None:
        return self.regular_hours.get(WEEKDAYS[day.weekday()])


def load_business_hours(path: Path | None) -> BusinessHoursConfig:
    """Read the JSON calendar, falling back to the default configuration."""

    if path is None:
        return BusinessHoursConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        config = BusinessHoursConfig.model_validate(data)
    except (OSError, json.JSONDecodeError, pydantic.ValidationError) as exc:
        logger.error("hours.config.load_failed path={} error={}", path, exc)
        return BusinessHoursConfig()
    logger.info("hours.config.loaded path={} timezone={}", path, config.timezone)
    return config


def format_long_date(day: date) -> str:
    """Long Spanish date, e.g. ``lunes, 20 de enero de 2025``."""
    return f"{_SPANISH_WEEKDAYS[day.weekday()]}, {day.day} de {_SPANISH_MONTHS[day.month - 1]} de {day.year}"


@dataclass(frozen=True)
class BusinessHoursResult:
    is_open: bool
    reason: ClosedReason | None = None
    holiday_name: str | None = None


@dataclass(frozen=True)
class NextBusinessDay:
    day: date
    label: str
    days_until: int


class BusinessHoursOracle:
    """Answer "are we open now" questions against one loaded calendar."""

    def __init__(self, config: BusinessHoursConfig | None = None, *, path: Path | None = None) -> None:
        self._path = path
        self.config = config if config is not None else load_business_hours(path)

    def reload(self) -> BusinessHoursConfig:
        if self._path is not None:
            self.config = load_business_hours(self._path)
        return self.config

    def local_time(self, now: datetime | None = None) -> datetime:
        """Convert to the configured timezone. Naive values are taken as local already."""
        zone = self.config.zone
        if now is None:
            return datetime.now(zone)
        if now.tzinfo is None:
            return now.replace(tzinfo=zone)
        return now.astimezone(zone)

    def is_business_hours(self, now: datetime | None = None) -> BusinessHoursResult:
        local = self.local_time(now)
        holiday_name = self.config.closure_name(local.date())
        if holiday_name is not None:
            return BusinessHoursResult(is_open=False, reason=ClosedReason.HOLIDAY, holiday_name=holiday_name)

        window = self.config.window_for(local.date())
        if window is None:
            return BusinessHoursResult(is_open=False, reason=ClosedReason.WEEKEND)

        current = local.time().replace(second=0, microsecond=0)
        if window.start <= current < window.end:
            return BusinessHoursResult(is_open=True)
        reason = ClosedReason.BEFORE_HOURS if current < window.start else ClosedReason.AFTER_HOURS
        return BusinessHoursResult(is_open=False, reason=reason)

    def get_next_business_day(self, from_time: datetime | None = None) -> NextBusinessDay:
        """First day after `from_time` that has a schedule and no closure."""
        day = self.local_time(from_time).date() + timedelta(days=1)
        days_checked = 0
        while days_checked < MAX_LOOKAHEAD_DAYS:
            if self.config.closure_name(day) is None and self.config.window_for(day) is not None:
                return NextBusinessDay(day=day, label=format_long_date(day), days_until=days_checked + 1)
            day += timedelta(days=1)
            days_checked += 1

        logger.warning("hours.next_business_day.not_found lookahead_days={}", MAX_LOOKAHEAD_DAYS)
        return NextBusinessDay(day=day, label=format_long_date(day), days_until=days_checked)

    def get_auto_reply_message(self, now: datetime | None = None) -> str | None:
        """Reply text for the current closure, or None while open."""
        status = self.is_business_hours(now)
        if status.is_open:
            return None

        templates = self.config.auto_reply_messages
        next_day = self.get_next_business_day(now)
        if status.reason is ClosedReason.HOLIDAY or next_day.days_until > 1:
            template = templates.holiday
        elif status.reason is ClosedReason.WEEKEND or next_day.days_until > 2:
            template = templates.weekend_or_extended
        else:
            template = templates.out_of_hours

        return (
            template.replace("{holidayName}", status.holiday_name or DEFAULT_HOLIDAY_NAME)
            .replace("{nextBusinessDay}", next_day.label)
            .replace("{reason}", CLOSED_REASON_TEXT)
        )

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        result = self.is_business_hours(now)
        next_day = self.get_next_business_day(now)
        return {
            "is_open": result.is_open,
            "reason": result.reason.value if result.reason else None,
            "holiday_name": result.holiday_name,
            "next_business_day": next_day.label,
            "days_until": next_day.days_until,
        }
