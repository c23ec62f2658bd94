"""
Video durations are stored either as a number of seconds or as a
"MM:SS" / "HH:MM:SS" timecode string. Both are parsed into a tagged value and
normalized through `to_seconds`, so sorting and display never branch on the
stored form.
"""

from typing import NamedTuple, Optional, Union


class Seconds(NamedTuple):
    value: float


class Timecode(NamedTuple):
    text: str


Duration = Union[Seconds, Timecode]


def parse_duration(raw) -> Optional[Duration]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return Seconds(raw)
    text = str(raw).strip()
    if not text:
        return None
    return Timecode(text)


def _timecode_seconds(text: str) -> int:
    parts = text.split(":")
    if len(parts) == 1:
        # plain "90" strings come from forms that stringify the seconds count
        return int(float(parts[0]))
    numbers = [int(p) for p in parts]
    if len(numbers) == 2:
        return numbers[0] * 60 + numbers[1]
    if len(numbers) == 3:
        return numbers[0] * 3600 + numbers[1] * 60 + numbers[2]
    raise ValueError(f"unsupported timecode: {text}")


def to_seconds(duration) -> int:
    """Seconds for a Duration or a raw stored value. Unparsable values count as 0."""
    if not isinstance(duration, (Seconds, Timecode)):
        duration = parse_duration(duration)
    if duration is None:
        return 0
    try:
        if isinstance(duration, Seconds):
            return max(0, int(round(duration.value)))
        return max(0, _timecode_seconds(duration.text))
    except (ValueError, OverflowError):
        return 0


def format_timecode(seconds: int) -> str:
    """90 -> "01:30" (the admin table format)."""
    if not seconds:
        return "00:00"
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes:02d}:{rest:02d}"


def format_duration(duration) -> str:
    """Human label: "1 min 30 sec", "1 hr 5 min". Unknown when nothing is stored."""
    if parse_duration(duration) is None:
        return "Unknown"
    total = to_seconds(duration)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)

    parts = []
    if hours:
        parts.append(f"{hours} hr")
    if minutes:
        parts.append(f"{minutes} min")
    if seconds or not parts:
        parts.append(f"{seconds} sec")
    return " ".join(parts)


def format_views(views: Optional[int]) -> str:
    if not views:
        return "0 views"
    if views < 1000:
        return f"{views} views"
    if views < 1000000:
        return f"{views / 1000:.1f}K views"
    return f"{views / 1000000:.1f}M views"
