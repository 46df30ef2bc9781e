"""Built-in functions reachable through ``{{func:name(args)}}``."""

import base64
import random
import re
import string
import time
import uuid as uuid_lib
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, unquote

TemplateFunction = Callable[..., Any]

_RANDOM_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits

_DATE_TOKEN_RE = re.compile(r"yyyy|yy|SSS|MM|M|dd|d|HH|H|hh|h|mm|m|ss|s|a")

_RELATIVE_UNITS = {
    "days": "days",
    "hours": "hours",
    "minutes": "minutes",
    "seconds": "seconds",
}


def _int_arg(args: tuple, position: int, default: int) -> int:
    if len(args) > position and isinstance(args[position], (int, float)) and not isinstance(args[position], bool):
        return int(args[position])
    return default


def _str_arg(args: tuple, position: int, default: str = "") -> str:
    if len(args) > position and args[position] is not None:
        return str(args[position])
    return default


def _iso(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def uuid(*args: Any) -> str:
    return str(uuid_lib.uuid4())


def timestamp(*args: Any) -> int:
    return int(time.time() * 1000)


def iso_date(*args: Any) -> str:
    return _iso(_now())


def date_format(*args: Any) -> str:
    """``dateFormat(dayOffset=0, format='YYYY-MM-DD')`` in local time."""
    offset = _int_arg(args, 0, 0)
    fmt = _str_arg(args, 1, "YYYY-MM-DD")
    moment = datetime.now() + timedelta(days=offset)
    return (
        fmt.replace("YYYY", f"{moment.year:04d}", 1)
        .replace("MM", f"{moment.month:02d}", 1)
        .replace("DD", f"{moment.day:02d}", 1)
        .replace("HH", f"{moment.hour:02d}", 1)
        .replace("mm", f"{moment.minute:02d}", 1)
        .replace("ss", f"{moment.second:02d}", 1)
    )


def date_iso(*args: Any) -> str:
    offset = _int_arg(args, 0, 0)
    return _iso(_now() + timedelta(days=offset)).split("T")[0]


def date_rfc3339(*args: Any) -> str:
    offset = _int_arg(args, 0, 0)
    return _iso(_now() + timedelta(days=offset))


def format_date_pattern(*args: Any) -> str:
    """``formatDatePattern(pattern, dayOffset=0)`` with yyyy/MM/dd/HH/mm/ss/SSS/a tokens."""
    pattern = _str_arg(args, 0, "yyyy-MM-dd")
    moment = datetime.now() + timedelta(days=_int_arg(args, 1, 0))
    return render_date_pattern(pattern, moment)


def render_date_pattern(pattern: str, moment: datetime) -> str:
    hour12 = moment.hour % 12 or 12
    values = {
        "yyyy": f"{moment.year:04d}",
        "yy": f"{moment.year:04d}"[2:],
        "MM": f"{moment.month:02d}",
        "M": str(moment.month),
        "dd": f"{moment.day:02d}",
        "d": str(moment.day),
        "HH": f"{moment.hour:02d}",
        "H": str(moment.hour),
        "hh": f"{hour12:02d}",
        "h": str(hour12),
        "mm": f"{moment.minute:02d}",
        "m": str(moment.minute),
        "ss": f"{moment.second:02d}",
        "s": str(moment.second),
        "SSS": f"{moment.microsecond // 1000:03d}",
        "a": "AM" if moment.hour < 12 else "PM",
    }
    return _DATE_TOKEN_RE.sub(lambda m: values[m.group(0)], pattern)


def relative_date(*args: Any) -> str:
    amount = _int_arg(args, 0, 0)
    unit = _RELATIVE_UNITS.get(_str_arg(args, 1, "days"), "days")
    return _iso(_now() + timedelta(**{unit: amount}))


def random_int(*args: Any) -> int:
    low = _int_arg(args, 0, 0)
    high = _int_arg(args, 1, 100)
    if low > high:
        low, high = high, low
    return random.randint(low, high)


def random_string(*args: Any) -> str:
    length = max(_int_arg(args, 0, 10), 0)
    return "".join(random.choice(_RANDOM_ALPHABET) for _ in range(length))


def base64_encode(*args: Any) -> str:
    return base64.b64encode(_str_arg(args, 0).encode("utf-8")).decode("ascii")


def base64_decode(*args: Any) -> str:
    try:
        return base64.b64decode(_str_arg(args, 0), validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return ""


def url_encode(*args: Any) -> str:
    return quote(_str_arg(args, 0), safe="-_.!~*'()")


def url_decode(*args: Any) -> str:
    return unquote(_str_arg(args, 0))


DEFAULT_FUNCTIONS: dict[str, TemplateFunction] = {
    "uuid": uuid,
    "timestamp": timestamp,
    "isoDate": iso_date,
    "dateFormat": date_format,
    "dateISO": date_iso,
    "dateRFC3339": date_rfc3339,
    "formatDatePattern": format_date_pattern,
    "relativeDate": relative_date,
    "randomInt": random_int,
    "randomString": random_string,
    "base64Encode": base64_encode,
    "base64Decode": base64_decode,
    "urlEncode": url_encode,
    "urlDecode": url_decode,
}
