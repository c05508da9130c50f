"""
Разбор выражений длительности вида "15m", "7d", "1W".

Грамматика: целое без ведущих нулей (или "0") + одна буква единицы.
Единицы: s, m, h, d, w (регистр не важен).
"""

import re
import time
from typing import Optional, Union

from .errors import DurationFormatError, UnsupportedDurationUnit, DurationOverflowError

# Верхняя граница безопасного целого для потребителей токенов (JS и пр.)
MAX_SAFE_INTEGER = 2 ** 53 - 1

_DURATION_RE = re.compile(r"(0|[1-9][0-9]*)([a-z])", re.IGNORECASE)

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}

Duration = Union[str, int]


def _split(expr: str) -> tuple[int, str]:
    if not isinstance(expr, str):
        raise DurationFormatError(
            f"Duration must be a string like '15m', got {type(expr).__name__}"
        )
    match = _DURATION_RE.fullmatch(expr)
    if match is None:
        raise DurationFormatError(
            f"Invalid duration format: {expr!r}. Expected <integer><unit>, e.g. '15m' or '7d'"
        )
    amount_str, unit = match.groups()
    unit = unit.lower()
    if unit not in UNIT_SECONDS:
        raise UnsupportedDurationUnit(
            f"Unsupported duration unit {unit!r} in {expr!r}. Use one of: s, m, h, d, w"
        )
    amount = int(amount_str)
    # граница проверяется по итоговым миллисекундам, а не по количеству
    if amount * UNIT_SECONDS[unit] * 1000 > MAX_SAFE_INTEGER:
        raise DurationOverflowError(f"Duration too large: {expr!r} exceeds {MAX_SAFE_INTEGER} ms")
    return amount, unit


def parse_duration(expr: str) -> int:
    """
    Разобрать выражение длительности в миллисекунды.

    Raises:
        DurationFormatError: синтаксически неверное выражение
            ("3.5h", "-7d", "07d", "7hd", "")
        UnsupportedDurationUnit: корректная форма, но неизвестная единица ("7x")
        DurationOverflowError: результат в миллисекундах больше MAX_SAFE_INTEGER

    Пример:
        parse_duration("7d")  # 604800000
    """
    amount, unit = _split(expr)
    return amount * UNIT_SECONDS[unit] * 1000


def duration_seconds(value: Duration) -> int:
    """Длительность в секундах. int принимается как готовое число секунд."""
    if isinstance(value, bool):
        raise DurationFormatError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise DurationFormatError(f"Duration must be non-negative, got {value}")
        return value
    amount, unit = _split(value)
    return amount * UNIT_SECONDS[unit]


def expiry_from(value: Duration, now: Optional[float] = None) -> float:
    """
    Абсолютное время истечения (unix seconds) для длительности от момента `now`.

    Пример:
        expiry_from("7d", now=t)  # t + 604800
    """
    issued_at = time.time() if now is None else now
    return issued_at + duration_seconds(value)
