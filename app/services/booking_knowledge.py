from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from app.logging_config import get_logger

_KNOWLEDGE_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "booking_flow.yaml"

DEFAULT_TIME = "10:00"
MIN_PARTIAL_NAME_LENGTH = 3

logger = get_logger("booking_knowledge")

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_MONTHS = [
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
]

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_MONTH_DAY_RE = re.compile(r"\b(" + "|".join(m[:3] for m in _MONTHS) + r")[a-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b")
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?(" + "|".join(m[:3] for m in _MONTHS) + r")[a-z]*\b")
_WEEKDAY_RE = re.compile(r"\b(next\s+)?(" + "|".join(_WEEKDAYS) + r")\b")
_AMPM_TIME_RE = re.compile(r"\b(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?\s*m\b\.?")
_CLOCK_TIME_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_NOON_RE = re.compile(r"\b(noon|midday)\b")


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


@lru_cache(maxsize=1)
def load_booking_knowledge() -> dict[str, Any]:
    with _KNOWLEDGE_PATH.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid booking knowledge file: {_KNOWLEDGE_PATH}")
    return data


def default_services() -> list[dict[str, Any]]:
    return [dict(service) for service in load_booking_knowledge().get("default_services") or []]


def get_phrases(kind: str) -> list[str]:
    return [str(p).lower() for p in (load_booking_knowledge().get("phrases") or {}).get(kind) or []]


def render_reply(key: str, **values: Any) -> str:
    template = (load_booking_knowledge().get("replies") or {}).get(key)
    if template is None:
        raise KeyError(f"Unknown reply template: {key}")
    return template.format(**values)


def matches_phrase(text: str, kind: str) -> bool:
    """Whole-word match against a phrase list ("yes" does not match "yesterday")."""
    normalized = _normalize_text(text)
    if not normalized:
        return False
    for phrase in get_phrases(kind):
        if re.search(r"\b" + re.escape(phrase) + r"\b", normalized):
            return True
    return False


def format_service_list(services: list[dict[str, Any]]) -> str:
    lines = [render_reply("service_list_header"), ""]
    for index, service in enumerate(services, start=1):
        line = f"{index}. {service.get('name')}"
        if service.get("duration"):
            line += f" ({service['duration']} min)"
        if service.get("price"):
            line += f" - ${service['price']}"
        lines.append(line)
    lines.extend(["", render_reply("service_list_footer")])
    return "\n".join(lines)


def match_service(text: str, services: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Pick a service by 1-based position, by its full name anywhere in the text,
    or by text that starts a word of the name ("beard" for "Beard Trim")."""
    normalized = _normalize_text(text)
    if not normalized or not services:
        return None
    if normalized.isdigit():
        index = int(normalized) - 1
        if 0 <= index < len(services):
            return services[index]
        return None
    names = [(_normalize_text(str(service.get("name") or "")), service) for service in services]
    for name, service in names:
        if name and re.search(r"\b" + re.escape(name) + r"\b", normalized):
            return service
    if len(normalized) < MIN_PARTIAL_NAME_LENGTH:
        return None
    for name, service in names:
        if name and re.search(r"\b" + re.escape(normalized), name):
            return service
    return None


def _parse_date(text: str, today: date) -> Optional[date]:
    if "day after tomorrow" in text:
        return today + timedelta(days=2)
    if "tomorrow" in text:
        return today + timedelta(days=1)
    if "today" in text or "tonight" in text:
        return today

    match = _ISO_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None

    month = day = None
    match = _MONTH_DAY_RE.search(text)
    if match:
        month, day = match.group(1), int(match.group(2))
    else:
        match = _DAY_MONTH_RE.search(text)
        if match:
            day, month = int(match.group(1)), match.group(2)
    if month is not None:
        month_number = [m[:3] for m in _MONTHS].index(month[:3]) + 1
        try:
            candidate = date(today.year, month_number, day)
        except ValueError:
            return None
        if candidate < today:
            try:
                candidate = date(today.year + 1, month_number, day)
            except ValueError:
                return None
        return candidate

    match = _WEEKDAY_RE.search(text)
    if match:
        target = _WEEKDAYS.index(match.group(2))
        days_ahead = (target - today.weekday()) % 7 or 7
        return today + timedelta(days=days_ahead)
    return None


def _parse_time(text: str) -> Optional[str]:
    match = _AMPM_TIME_RE.search(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        if match.group(3) == "p" and hour != 12:
            hour += 12
        if match.group(3) == "a" and hour == 12:
            hour = 0
        return f"{hour:02d}:{minute:02d}"
    match = _CLOCK_TIME_RE.search(text)
    if match:
        return f"{int(match.group(1)):02d}:{match.group(2)}"
    if _NOON_RE.search(text):
        return "12:00"
    return None


def parse_date_time(text: str, now: datetime) -> Optional[tuple[str, str]]:
    """Parse a requested slot into ("YYYY-MM-DD", "HH:MM").

    A time without a date means today, or tomorrow once that time has
    passed. A date without a time gets DEFAULT_TIME.
    """
    normalized = _normalize_text(text)
    if not normalized:
        return None
    today = now.date()
    parsed_date = _parse_date(normalized, today)
    parsed_time = _parse_time(normalized)

    if parsed_date is None and parsed_time is None:
        return None
    if parsed_date is None:
        parsed_date = today if parsed_time > now.strftime("%H:%M") else today + timedelta(days=1)
    if parsed_time is None:
        parsed_time = DEFAULT_TIME
    return parsed_date.isoformat(), parsed_time
