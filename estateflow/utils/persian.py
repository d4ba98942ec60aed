"""Persian locale helpers: digits, number words, Jalali dates and relative times."""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

import jdatetime

PERSIAN_DIGITS = {
    "۰": "0",
    "۱": "1",
    "۲": "2",
    "۳": "3",
    "۴": "4",
    "۵": "5",
    "۶": "6",
    "۷": "7",
    "۸": "8",
    "۹": "9",
    "٠": "0",
    "١": "1",
    "٢": "2",
    "٣": "3",
    "٤": "4",
    "٥": "5",
    "٦": "6",
    "٧": "7",
    "٨": "8",
    "٩": "9",
}
_DIGIT_TABLE = str.maketrans(PERSIAN_DIGITS)
_TO_PERSIAN_TABLE = str.maketrans("0123456789", "۰۱۲۳۴۵۶۷۸۹")

NUMBER_WORDS = {
    "صفر": Decimal(0),
    "یک": Decimal(1),
    "دو": Decimal(2),
    "سه": Decimal(3),
    "چهار": Decimal(4),
    "پنج": Decimal(5),
    "شش": Decimal(6),
    "هفت": Decimal(7),
    "هشت": Decimal(8),
    "نه": Decimal(9),
    "ده": Decimal(10),
    "یازده": Decimal(11),
    "دوازده": Decimal(12),
    "سیزده": Decimal(13),
    "چهارده": Decimal(14),
    "پانزده": Decimal(15),
    "شانزده": Decimal(16),
    "هفده": Decimal(17),
    "هجده": Decimal(18),
    "نوزده": Decimal(19),
    "بیست": Decimal(20),
    "سی": Decimal(30),
    "چهل": Decimal(40),
    "پنجاه": Decimal(50),
    "شصت": Decimal(60),
    "هفتاد": Decimal(70),
    "هشتاد": Decimal(80),
    "نود": Decimal(90),
    "صد": Decimal(100),
    "ربع": Decimal("0.25"),
    "چند": Decimal(3),
    "نیم": Decimal("0.5"),
}

JALALI_MONTHS = {
    "فروردین": 1,
    "اردیبهشت": 2,
    "خرداد": 3,
    "تیر": 4,
    "مرداد": 5,
    "شهریور": 6,
    "مهر": 7,
    "آبان": 8,
    "آذر": 9,
    "دی": 10,
    "بهمن": 11,
    "اسفند": 12,
}

_SECOND = 1000
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR

RELATIVE_UNITS_MS = {
    "ثانیه": _SECOND,
    "دقیقه": _MINUTE,
    "ساعت": _HOUR,
    "روز": _DAY,
    "هفته": 7 * _DAY,
    "ماه": 30 * _DAY,
    "سال": 365 * _DAY,
    "ربع": 15 * _MINUTE,
    "ربعساعت": 15 * _MINUTE,
}

# Phrases like "a few moments ago" carry no number; they are estimated as five minutes.
MOMENT_TOKENS = ("لحظه", "لحظات", "دقایقی")
MOMENT_ESTIMATE_MS = 5 * _MINUTE

_INVISIBLE_RE = re.compile("[\u200c\u200e\u200f]")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_RELATIVE_RE = re.compile(r"(?:(\d+(?:\.\d+)?)|(\S+))\s+(ثانیه|دقیقه|ساعت|روز|هفته|ماه|سال|ربع(?:\s*ساعت)?)")
_NON_PERSIAN_RE = re.compile("[^\u0600-\u06ff\\s]")


def normalize_digits(value: str) -> str:
    """Replace Persian and Arabic-Indic digits with ASCII digits."""
    return value.translate(_DIGIT_TABLE)


def normalize_label(value: str) -> str:
    return " ".join(_INVISIBLE_RE.sub("", value).split())


def normalize_word(value: str) -> str:
    """Fold Arabic letter variants to their Persian forms and drop non-Persian characters."""
    value = value.replace("ي", "ی").replace("ك", "ک").replace("ۀ", "ه")
    value = _INVISIBLE_RE.sub("", value)
    return _NON_PERSIAN_RE.sub("", value).strip()


def parse_number(value: str | None) -> Decimal | None:
    """Return the first number found in ``value``.

    Thousands separators (``,``, ``٬`` and ``،``) are dropped and the Persian decimal
    separator ``٫`` is read as a dot.
    """
    if not value:
        return None
    cleaned = normalize_digits(value)
    cleaned = cleaned.replace(",", "").replace("،", "").replace("٬", "").replace("٫", ".")
    cleaned = _INVISIBLE_RE.sub("", cleaned)
    match = _NUMBER_RE.search(cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return None


def parse_number_token(value: str | None) -> Decimal | None:
    """Parse a numeric token, falling back to Persian number words."""
    if not value:
        return None
    number = parse_number(value)
    if number is not None:
        return number
    word = normalize_word(value)
    return NUMBER_WORDS.get(word)


def to_persian_digits(value: int | str) -> str:
    return str(value).translate(_TO_PERSIAN_TABLE)


def current_jalali_year(today: date | None = None) -> int:
    return jdatetime.date.fromgregorian(date=today or date.today()).year


def jalali_to_gregorian(year: int, month: int, day: int) -> date | None:
    try:
        return jdatetime.date(year, month, day).togregorian()
    except ValueError:
        return None


def extract_jalali_date(text: str | None) -> tuple[str, date | None] | None:
    """Read a trailing ``"<day> <month name> <year>"`` fragment after the last hyphen.

    Returns the Jalali date as ``YYYY-MM-DD`` together with its Gregorian date
    (``None`` when the Jalali date does not exist in the calendar).
    """
    if not text:
        return None
    normalized = normalize_digits(text)
    _, hyphen, tail = normalized.rpartition("-")
    if not hyphen:
        return None
    tokens = re.sub(r"[،,.]", " ", tail).split()
    if len(tokens) < 3:
        return None
    try:
        day = int(tokens[0])
        year = int(tokens[2])
    except ValueError:
        return None
    month = JALALI_MONTHS.get(normalize_word(tokens[1]))
    if not month:
        return None
    return f"{year}-{month:02d}-{day:02d}", jalali_to_gregorian(year, month, day)


def relative_duration_ms(subtitle: str | None) -> int | None:
    """Convert a "published N units ago" subtitle into milliseconds.

    Only the text before the location marker ``" در "`` is considered.
    """
    if not subtitle:
        return None
    relative = subtitle
    for marker in (" در ", " در", "در "):
        index = subtitle.find(marker)
        if index != -1:
            relative = subtitle[:index]
            break
    relative = _INVISIBLE_RE.sub(" ", normalize_digits(relative))
    relative = relative.replace("ي", "ی")
    match = _RELATIVE_RE.search(relative)
    if not match:
        if any(token in relative for token in MOMENT_TOKENS):
            return MOMENT_ESTIMATE_MS
        return None
    amount = parse_number_token(match.group(1) or match.group(2))
    if amount is None:
        return None
    unit = normalize_word(match.group(3))
    unit_ms = RELATIVE_UNITS_MS.get(unit) or RELATIVE_UNITS_MS.get("".join(unit.split()))
    if not unit_ms:
        return None
    return int(amount * unit_ms)
