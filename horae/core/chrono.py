"""
Story calendar parsing and relative-time arithmetic.

Two date dialects are understood:

  standard  - year/month/day (year optional), with a derived weekday.
              Accepts 2026/2/4, 2026-02-04, 2/4, 2026年2月4日, 2月4日 and
              prefixed forms such as 永历3年2月4日.
  freeform  - an opaque month identifier and/or day number, e.g.
              "霜月第三日", "Day 12", "xx/xx". No weekday.

Every public function is total: malformed input yields ``None`` or a
fallback label, never an exception, so display code always has something
to show.
"""

import re
from dataclasses import dataclass
from typing import Optional

from ..enums import CalendarType

DEFAULT_YEAR = 2024

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_WEEKDAY_ABBR = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_CJK_NUMERALS = {
    "零": 0, "〇": 0,
    "一": 1, "二": 2, "三": 3, "四": 4, "五": 5,
    "六": 6, "七": 7, "八": 8, "九": 9, "十": 10,
    "十一": 11, "十二": 12, "十三": 13, "十四": 14, "十五": 15,
    "十六": 16, "十七": 17, "十八": 18, "十九": 19, "二十": 20,
    "廿": 20, "廿一": 21, "廿二": 22, "廿三": 23, "廿四": 24, "廿五": 25,
    "廿六": 26, "廿七": 27, "廿八": 28, "廿九": 29, "三十": 30,
    "三十一": 31, "卅": 30, "卅一": 31,
}
# Longest numerals first so 十一 is tried before 十 and 一
_CJK_NUMERALS_BY_LENGTH = sorted(_CJK_NUMERALS.items(), key=lambda kv: -len(kv[0]))

_WEEKDAY_NOTE = re.compile(
    r"\s*[(（]\s*(?:(?:周|星期)?[日一二三四五六天]|(?:mon|tue|wed|thu|fri|sat|sun)[a-z]*\.?)\s*[)）]\s*",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r"[xX]{2}|[?？]{2}")
_FULL_NUMERIC = re.compile(r"^(\d{4,})[/\-](\d{1,2})[/\-](\d{1,2})")
_SHORT_NUMERIC = re.compile(r"^(\d{1,2})[/\-](\d{1,2})(?:\s|$)")
_CJK_WITH_YEAR = re.compile(r"(\d+)年\s*(\d{1,2})月(\d{1,2})日?")
_CJK_MONTH_DAY = re.compile(r"(\d{1,2})月(\d{1,2})日?")
_MONTH_ID = re.compile(r"([^\s\d]+月)")
_NUMERIC_MONTH = re.compile(r"(?:\d{4}[/\-])?(\d{1,2})[/\-]\d{1,2}")
_ARABIC_DAY = re.compile(r"(?:第|day\s*)(\d+)(?:日)?", re.IGNORECASE)
_ARABIC_DAY_SUFFIX = re.compile(r"(\d+)(?:日|号)")
_ANY_NUMBER = re.compile(r"(\d+)")
_CLOCK = re.compile(r"(\d{1,2})[:：]")
_PERIOD_WORDS = (
    "凌晨", "早上", "上午", "中午", "下午", "傍晚", "晚上", "深夜",
    "dawn", "morning", "noon", "afternoon", "dusk", "evening", "night", "midnight",
)


# ── Parsed dates ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class StoryDate:
    """A parsed story date in one of the two dialects."""
    type: CalendarType
    raw: str = ""
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    month_id: Optional[str] = None
    calendar_prefix: str = ""
    weekday_hint: Optional[str] = None

    @property
    def is_standard(self) -> bool:
        return self.type == CalendarType.STANDARD

    @property
    def month_key(self) -> Optional[str]:
        """Comparable month identifier across both dialects."""
        if self.month_id:
            return self.month_id
        if self.month:
            return f"{self.month}月"
        return None


@dataclass(frozen=True)
class RelativeTime:
    """Signed day offset between two story dates plus a display label.

    ``days`` is positive when the first date lies in the past relative to
    the second. It is ``None`` when only an ordering could be derived.
    """
    days: Optional[int]
    label: str
    relation: str = "exact"      # exact | later | earlier | unknown


def _days_from_civil(year: int, month: int, day: int) -> int:
    """Days since 1970-01-01 in the proleptic Gregorian calendar.

    Out-of-range days roll over into the next month, and years beyond
    9999 are fine.
    """
    y = year - (1 if month <= 2 else 0)
    era = y // 400
    yoe = y - era * 400
    doy = (153 * (month + (-3 if month > 2 else 9)) + 2) // 5
    doe = yoe * 365 + yoe // 4 - yoe // 100 + doy
    return era * 146097 + doe - 719468 + (day - 1)


def _civil_from_days(days: int) -> tuple[int, int, int]:
    z = days + 719468
    era = z // 146097
    doe = z - era * 146097
    yoe = (doe - doe // 1460 + doe // 36524 - doe // 146096) // 365
    doy = doe - (365 * yoe + yoe // 4 - yoe // 100)
    mp = (5 * doy + 2) // 153
    day = doy - (153 * mp + 2) // 5 + 1
    month = mp + 3 if mp < 10 else mp - 9
    year = yoe + era * 400 + (1 if month <= 2 else 0)
    return year, month, day


def _weekday(ordinal: int) -> int:
    """Weekday index (Monday=0) of a day number from ``_days_from_civil``."""
    return (ordinal + 3) % 7


def _valid_month_day(month: int, day: int) -> bool:
    return 1 <= month <= 12 and 1 <= day <= 31


def _extract_day_number(text: str) -> Optional[int]:
    match = _ARABIC_DAY.search(text) or _ARABIC_DAY_SUFFIX.search(text)
    if match:
        return int(match.group(1))

    for numeral, value in _CJK_NUMERALS_BY_LENGTH:
        patterns = (
            f"第{numeral}日",
            f"第{numeral}(?![一-龥])",
            f"月{numeral}日",
            f"{numeral}日",
        )
        if any(re.search(p, text) for p in patterns):
            return value

    match = _ANY_NUMBER.search(text)
    if match:
        return int(match.group(1))
    return None


def _extract_month_id(text: str) -> Optional[str]:
    match = _MONTH_ID.search(text)
    if match:
        return match.group(1)
    match = _NUMERIC_MONTH.search(text)
    if match:
        return f"{int(match.group(1))}月"
    return None


def parse_story_date(text) -> Optional[StoryDate]:
    """Parse a story date string.

    Args:
        text: Date text as written in a ``time:`` tag (the time part may
            still be attached; only the leading date is inspected).

    Returns:
        StoryDate, or None when nothing date-like was found.
    """
    if not text or not isinstance(text, str):
        return None

    stripped = text.strip()
    hint_match = _WEEKDAY_NOTE.search(stripped)
    weekday_hint = hint_match.group(0).strip(" ()（）") if hint_match else None
    cleaned = _WEEKDAY_NOTE.sub(" ", stripped).strip()
    if not cleaned:
        return None

    if _PLACEHOLDER.search(cleaned):
        return StoryDate(type=CalendarType.FREEFORM, raw=stripped, weekday_hint=weekday_hint)

    match = _FULL_NUMERIC.match(cleaned)
    if match:
        year, month, day = (int(g) for g in match.groups())
        if _valid_month_day(month, day):
            return StoryDate(type=CalendarType.STANDARD, raw=stripped, year=year, month=month, day=day)

    match = _SHORT_NUMERIC.match(cleaned)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        if _valid_month_day(month, day):
            return StoryDate(type=CalendarType.STANDARD, raw=stripped, month=month, day=day)

    # Must run before the bare 月/日 form or the year is lost
    match = _CJK_WITH_YEAR.search(cleaned)
    if match:
        year, month, day = (int(g) for g in match.groups())
        if _valid_month_day(month, day):
            prefix = cleaned[:match.start()].strip()
            return StoryDate(
                type=CalendarType.STANDARD, raw=stripped,
                year=year, month=month, day=day, calendar_prefix=prefix,
            )

    match = _CJK_MONTH_DAY.search(cleaned)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        if _valid_month_day(month, day):
            return StoryDate(type=CalendarType.STANDARD, raw=stripped, month=month, day=day)

    month_id = _extract_month_id(cleaned)
    day = _extract_day_number(cleaned)
    if month_id or day is not None:
        return StoryDate(
            type=CalendarType.FREEFORM, raw=stripped,
            day=day, month_id=month_id, weekday_hint=weekday_hint,
        )
    return None


# ── Arithmetic ─────────────────────────────────────────────────────────

def _resolve_years(a: StoryDate, b: StoryDate) -> tuple[int, int]:
    a_year = a.year or b.year or DEFAULT_YEAR
    b_year = b.year or a.year or DEFAULT_YEAR
    return a_year, b_year


def day_difference(from_text: str, to_text: str) -> RelativeTime:
    """Signed number of days from ``from_text`` to ``to_text``.

    Standard pairs are exact. Freeform pairs are exact only within the
    same month; across months only the order is known.
    """
    from_text = (from_text or "").strip()
    to_text = (to_text or "").strip()
    if not from_text or not to_text:
        return RelativeTime(None, "unknown", "unknown")

    if from_text.split()[0] == to_text.split()[0]:
        return RelativeTime(0, "today")

    start = parse_story_date(from_text)
    end = parse_story_date(to_text)
    if not start or not end:
        return RelativeTime(None, "unknown", "unknown")

    if start.is_standard and end.is_standard:
        start_year, end_year = _resolve_years(start, end)
        days = (_days_from_civil(end_year, end.month, end.day)
                - _days_from_civil(start_year, start.month, start.day))
        return RelativeTime(days, "")

    start_month, end_month = start.month_key, end.month_key
    if start.day is not None and end.day is not None:
        if start_month and end_month and start_month != end_month:
            if end.day > start.day:
                return RelativeTime(None, "later", "later")
            return RelativeTime(None, "earlier", "earlier")
        return RelativeTime(end.day - start.day, "")
    return RelativeTime(None, "some time ago", "earlier")


def format_relative_label(
    days: Optional[int],
    from_date: Optional[StoryDate] = None,
    to_date: Optional[StoryDate] = None,
) -> str:
    """Human label for a day offset ("yesterday", "last Friday", ...).

    ``from_date``/``to_date`` must be standard dates with resolved years for
    the calendar-aware labels; otherwise plain counts are used.
    """
    if days is None:
        return "unknown"

    near = {
        0: "today", 1: "yesterday", 2: "the day before yesterday", 3: "three days ago",
        -1: "tomorrow", -2: "the day after tomorrow", -3: "in three days",
    }
    if days in near:
        return near[days]

    past = days > 0
    span = abs(days)
    if span < 7:
        return f"{span} days ago" if past else f"in {span} days"

    calendar_aware = (
        from_date is not None and to_date is not None
        and from_date.is_standard and to_date.is_standard
    )
    if calendar_aware:
        from_year = from_date.year or DEFAULT_YEAR
        weekday = WEEKDAYS[_weekday(_days_from_civil(from_year, from_date.month, from_date.day))]
        if span <= 13:
            return f"last {weekday}" if past else f"next {weekday}"
        if 20 <= span < 60 and from_date.month != to_date.month:
            return (f"last month on the {_ordinal(from_date.day)}" if past
                    else f"next month on the {_ordinal(from_date.day)}")
        if past and span >= 300 and (from_date.year or 0) < (to_date.year or 0) and span < 730:
            return f"last year on {_MONTH_NAMES[from_date.month - 1]} {from_date.day}"

    suffix = "ago" if past else "from now"
    if span < 14:
        weeks = -(-span // 7)
        return f"{weeks} weeks {suffix}"
    if span < 365:
        return f"{round(span / 30)} months {suffix}"
    years, rest = divmod(span, 365)
    months = round(rest / 30)
    if months > 0 and years < 5:
        return f"{years} years {months} months {suffix}"
    return f"{years} years {suffix}"


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def relative_time(from_text: str, to_text: str) -> RelativeTime:
    """Day offset plus a display label; never raises."""
    diff = day_difference(from_text, to_text)
    if diff.relation != "exact" or diff.days is None:
        return diff

    start = parse_story_date(from_text)
    end = parse_story_date(to_text)
    if start and end and start.is_standard and end.is_standard:
        start_year, end_year = _resolve_years(start, end)
        start = StoryDate(type=CalendarType.STANDARD, year=start_year, month=start.month, day=start.day)
        end = StoryDate(type=CalendarType.STANDARD, year=end_year, month=end.month, day=end.day)
    else:
        start = end = None
    return RelativeTime(diff.days, format_relative_label(diff.days, start, end))


# ── Formatting ─────────────────────────────────────────────────────────

def format_story_date(parsed: Optional[StoryDate], include_weekday: bool = False) -> str:
    """Render a parsed date in its canonical form."""
    if parsed is None:
        return ""
    if not parsed.is_standard:
        result = parsed.raw
        if include_weekday and parsed.weekday_hint and f"({parsed.weekday_hint})" not in result:
            result += f" ({parsed.weekday_hint})"
        return result

    if parsed.year is not None:
        if parsed.calendar_prefix:
            text = f"{parsed.calendar_prefix}{parsed.year}年{parsed.month}月{parsed.day}日"
        else:
            text = f"{parsed.year}/{parsed.month}/{parsed.day}"
    else:
        text = f"{parsed.month}/{parsed.day}"

    if include_weekday:
        year = parsed.year or DEFAULT_YEAR
        text += f" ({_WEEKDAY_ABBR[_weekday(_days_from_civil(year, parsed.month, parsed.day))]})"
    return text


def format_full_datetime(date_text: str, time_text: str = "") -> str:
    parsed = parse_story_date(date_text)
    base = format_story_date(parsed, include_weekday=True) if parsed else (date_text or "")
    return f"{base} {time_text}".strip() if time_text else base


def time_reference(current_date: str) -> Optional[dict[str, str]]:
    """Absolute dates of the recent past, so the model can resolve
    "yesterday" without doing calendar arithmetic itself."""
    parsed = parse_story_date(current_date)
    if parsed is None:
        return None
    if not parsed.is_standard:
        return {"current": current_date, "type": CalendarType.FREEFORM.value}

    base = _days_from_civil(parsed.year or DEFAULT_YEAR, parsed.month, parsed.day)

    def shifted(offset: int) -> str:
        _, month, day = _civil_from_days(base + offset)
        return f"{month}/{day} ({_WEEKDAY_ABBR[_weekday(base + offset)]})"

    return {
        "current": current_date,
        "type": CalendarType.STANDARD.value,
        "yesterday": shifted(-1),
        "day_before": shifted(-2),
        "three_days_ago": shifted(-3),
        "tomorrow": shifted(1),
    }


def subtract_days(date_text: str, days: int) -> str:
    """Move a standard date back by ``days``; other input is returned as-is."""
    parsed = parse_story_date(date_text)
    if parsed is None or not parsed.is_standard:
        return date_text
    year, month, day = _civil_from_days(
        _days_from_civil(parsed.year or DEFAULT_YEAR, parsed.month, parsed.day) - days
    )
    if parsed.year is not None:
        return f"{year}/{month}/{day}"
    return f"{month}/{day}"


def time_of_day(time_text: str) -> str:
    """Coarse period of the day for a clock string ("14:30" -> "afternoon")."""
    if not time_text:
        return ""
    lowered = time_text.lower()
    for word in _PERIOD_WORDS:
        if word in lowered:
            return word

    match = _CLOCK.search(time_text)
    if not match:
        return ""
    hour = int(match.group(1))
    if hour < 5:
        return "small hours"
    if hour < 8:
        return "early morning"
    if hour < 11:
        return "morning"
    if hour < 13:
        return "noon"
    if hour < 17:
        return "afternoon"
    if hour < 19:
        return "dusk"
    if hour < 23:
        return "evening"
    return "late night"
