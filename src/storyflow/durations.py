"""Duration and event-pattern parsing: wait specs and encoded stability events."""

import math
import re
from dataclasses import dataclass
from typing import Optional

from storyflow.steps import StabilityRequirement

# Minutes per unit. Every duration goes through minutes before it becomes milliseconds.
UNIT_MINUTES: dict[str, float] = {}
for _names, _minutes in (
    (("ms", "msec", "millisecond", "milliseconds"), 1 / 60_000),
    (("s", "sec", "secs", "second", "seconds"), 1 / 60),
    (("m", "min", "mins", "minute", "minutes"), 1.0),
    (("h", "hr", "hrs", "hour", "hours"), 60.0),
    (("d", "day", "days"), 60.0 * 24),
    (("w", "wk", "wks", "week", "weeks"), 60.0 * 24 * 7),
):
    for _name in _names:
        UNIT_MINUTES[_name] = _minutes

_DURATION_RE = re.compile(
    r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[A-Za-z]+)\.?"
    r"(?:\s+(?:for|to|until)\s+(?P<rest>.+))?$",
    re.IGNORECASE,
)
_OPEN_ENDED_RE = re.compile(r"^(?P<word>for|until)\s+(?P<label>.+)$", re.IGNORECASE)

_STABILITY_RE = re.compile(
    r"^(?P<metric>[a-z][a-z0-9]*(?:_[a-z0-9]+)*?)"
    r"_(?P<word>under|over|below|above)"
    r"_(?P<threshold>\d+(?:\.\d+)?)(?P<tunit>[a-z%]*)"
    r"_(?P<duration>\d+(?:\.\d+)?)(?P<dunit>[a-z]+)$",
    re.IGNORECASE,
)

# Leading words that describe the event rather than name the metric.
_QUALIFIERS = {"sustained", "stabilized", "stabilised", "stable", "steady", "persistent", "consistent"}


@dataclass(frozen=True)
class WaitSpec:
    delay_ms: Optional[int] = None
    until: Optional[str] = None
    label: Optional[str] = None


def to_minutes(value: float, unit: str) -> Optional[float]:
    """Convert ``value`` in ``unit`` to minutes; None for an unknown unit."""
    factor = UNIT_MINUTES.get(unit.lower())
    if factor is None:
        return None
    return value * factor


def round_half_up(value: float) -> int:
    """Nearest int with halves rounded up: 2.5 -> 3, 3.5 -> 4."""
    return int(math.floor(value + 0.5))


def minutes_to_ms(minutes: float) -> int:
    return round_half_up(minutes * 60_000)


def parse_wait_spec(spec: str) -> Optional[WaitSpec]:
    """Decode the text after ``Wait``. Returns None when it matches no form.

    ``5 minutes``            -> delay_ms=300000
    ``2 days for approval``  -> delay_ms=172800000, label="approval"
    ``for carrier pickup``   -> label="carrier pickup" (open-ended)
    ``until 2025-01-31``     -> until="2025-01-31"
    """
    text = spec.strip()
    m = _DURATION_RE.match(text)
    if m:
        minutes = to_minutes(float(m.group("value")), m.group("unit"))
        if minutes is not None:
            rest = m.group("rest")
            return WaitSpec(delay_ms=minutes_to_ms(minutes), label=rest.strip() if rest else None)
    m = _OPEN_ENDED_RE.match(text)
    if m:
        label = m.group("label").strip()
        if m.group("word").lower() == "until":
            return WaitSpec(until=label)
        return WaitSpec(label=label)
    return None


def parse_stability_event(token: str) -> Optional[StabilityRequirement]:
    """Decompose ``<metric>_(under|over|below|above)_<N><unit>_<M><unit>``; None if opaque."""
    m = _STABILITY_RE.match(token.strip())
    if not m:
        return None
    minutes = to_minutes(float(m.group("duration")), m.group("dunit"))
    if minutes is None:
        return None
    words = m.group("metric").lower().split("_")
    while len(words) > 1 and words[0] in _QUALIFIERS:
        words.pop(0)
    word = m.group("word").lower()
    return StabilityRequirement(
        metric="_".join(words),
        comparator="<" if word in ("under", "below") else ">",
        comparator_word=word,
        threshold=float(m.group("threshold")),
        threshold_unit=m.group("tunit").lower(),
        duration_minutes=minutes,
        duration_ms=minutes_to_ms(minutes),
    )


def format_number(value: float) -> str:
    """200.0 -> "200", 0.5 -> "0.5"."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def format_duration(ms: int) -> str:
    """ISO-8601 style duration: PT#H#M#S, zero hours/minutes omitted, seconds always."""
    if ms is None or ms <= 0:
        return "PT0S"
    total_seconds = round_half_up(ms / 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = ["PT"]
    if hours:
        parts.append(f"{hours}H")
    if minutes:
        parts.append(f"{minutes}M")
    parts.append(f"{seconds}S")
    return "".join(parts)
