"""Fixed daily slot template shared by every doctor.

Each slot is
    • a display label such as "09:00 AM"
    • a position in the template, which is the tie-break order when scores are equal
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeAlias


SlotLabel: TypeAlias = str  # Display label, e.g. "02:00 PM"

_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M")


def minutes_of_day(value: str) -> int | None:
    """Return minutes since midnight for a time string, or None if unparseable."""
    text = value.strip().upper()
    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.hour * 60 + parsed.minute
    return None


@dataclass(frozen=True, slots=True)
class SlotTemplate:
    labels: tuple[SlotLabel, ...]
    _by_minute: dict[int, SlotLabel] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        if len(set(self.labels)) != len(self.labels):
            raise ValueError("slot template labels must be unique")
        by_minute: dict[int, SlotLabel] = {}
        for label in self.labels:
            minute = minutes_of_day(label)
            if minute is None:
                raise ValueError(f"unparseable slot label: {label!r}")
            by_minute[minute] = label
        object.__setattr__(self, "_by_minute", by_minute)

    def __iter__(self) -> Iterator[SlotLabel]:
        return iter(self.labels)

    def __len__(self) -> int:
        return len(self.labels)

    def __contains__(self, label: object) -> bool:
        return label in self.labels

    def index(self, label: SlotLabel) -> int:
        """Return the template position of a label."""
        return self.labels.index(label)

    def resolve(self, value: str) -> SlotLabel | None:
        """Map a time string onto its canonical template label.

        Exact labels pass through untouched; "9:00 AM", "09:00" and "14:00"
        resolve by minutes of day. Anything else returns None.
        """
        if value in self.labels:
            return value
        minute = minutes_of_day(value)
        if minute is None:
            return None
        return self._by_minute.get(minute)


def build_default_template(labels: Sequence[SlotLabel] | None = None) -> SlotTemplate:
    """Return the clinic's 09:00 → 17:00 template with a lunch gap at 13:00."""
    if labels is None:
        labels = (
            "09:00 AM",
            "10:00 AM",
            "11:00 AM",
            "12:00 PM",
            "02:00 PM",
            "03:00 PM",
            "04:00 PM",
            "05:00 PM",
        )
    return SlotTemplate(tuple(labels))


DEFAULT_TEMPLATE = build_default_template()
