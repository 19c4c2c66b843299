"""Duration parsing for sweep intervals and task budgets."""

import re


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed."""

    pass


_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_HUMAN_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)")
_ISO_PATTERN = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)


def parse_duration(duration_str: str) -> float:
    """
    Parse a duration string to seconds.

    Accepts human-readable values ("500ms", "30s", "15m", "1h30m", "2d") and
    ISO-8601 durations ("PT30S", "PT1H", "P1D").

    Args:
        duration_str: Duration string to parse

    Returns:
        Duration in seconds (float, so sub-second budgets survive)

    Raises:
        DurationParseError: If the duration string is invalid or zero

    Examples:
        >>> parse_duration("1h30m")
        5400.0
        >>> parse_duration("PT30S")
        30.0
        >>> parse_duration("250ms")
        0.25
    """
    if not isinstance(duration_str, str):
        raise DurationParseError(f"Duration must be a string, got {type(duration_str).__name__}")

    cleaned = re.sub(r"\s+", "", duration_str).lower()
    if not cleaned:
        raise DurationParseError("Duration string cannot be empty")

    if cleaned.startswith("p"):
        seconds = _parse_iso8601(cleaned.upper())
    else:
        seconds = _parse_human_readable(cleaned, duration_str)

    if seconds <= 0:
        raise DurationParseError(f"Duration cannot be zero: '{duration_str}'")
    return seconds


def _parse_iso8601(value: str) -> float:
    match = _ISO_PATTERN.match(value)
    if not match or value in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{value}'. "
            "Expected format like 'P1D', 'PT1H30M' or 'PT30S'"
        )

    days, hours, minutes, seconds = match.groups()
    total = 0.0
    if days:
        total += int(days) * _UNIT_SECONDS["d"]
    if hours:
        total += int(hours) * _UNIT_SECONDS["h"]
    if minutes:
        total += int(minutes) * _UNIT_SECONDS["m"]
    if seconds:
        total += float(seconds)
    return total


def _parse_human_readable(cleaned: str, original: str) -> float:
    tokens = _HUMAN_TOKEN.findall(cleaned)
    if not tokens:
        raise DurationParseError(
            f"Invalid duration format: '{original}'. "
            "Expected format like '30s', '15m', '1h', '2d' or combinations like '1h30m'"
        )

    # Every character must belong to a number+unit token
    if "".join(f"{num}{unit}" for num, unit in tokens) != cleaned:
        raise DurationParseError(
            f"Invalid characters in duration: '{original}'. "
            "Use only digits and units: ms, s, m, h, d"
        )

    return sum(float(num) * _UNIT_SECONDS[unit] for num, unit in tokens)


def validate_duration_range(
    duration_seconds: float,
    min_seconds: float,
    max_seconds: float,
    label: str = "Duration",
) -> None:
    """
    Check that a parsed duration falls within [min_seconds, max_seconds].

    Raises:
        DurationParseError: If the duration is outside the range
    """
    if duration_seconds < min_seconds:
        raise DurationParseError(
            f"{label} too short: {describe_seconds(duration_seconds)}. "
            f"Minimum is {describe_seconds(min_seconds)}."
        )
    if duration_seconds > max_seconds:
        raise DurationParseError(
            f"{label} too long: {describe_seconds(duration_seconds)}. "
            f"Maximum is {describe_seconds(max_seconds)}."
        )


def describe_seconds(seconds: float) -> str:
    """Render seconds as a short human-readable string ("90 seconds", "2 hours")."""
    if seconds < 1:
        return f"{int(round(seconds * 1000))} milliseconds"
    if seconds < 120:
        whole = int(seconds)
        return f"{whole} second{'s' if whole != 1 else ''}"
    if seconds < 7200:
        minutes = int(seconds // 60)
        return f"{minutes} minutes"
    if seconds < 172800:
        hours = int(seconds // 3600)
        return f"{hours} hours"
    days = int(seconds // 86400)
    return f"{days} days"
