"""Weekly time grid and forbidden-slot bitmask helpers.

A week is ``days`` x ``periods`` slots. A slot index is ``day * periods + period``
and a mask is a plain ``int`` whose bit ``i`` marks slot ``i``.
"""

from dataclasses import dataclass

from .constants import get_day_name


@dataclass(frozen=True)
class TimeGrid:
    """Days x periods grid of a teaching week."""

    days: int
    periods: int

    @property
    def size(self) -> int:
        """Number of slots in the week."""
        return self.days * self.periods

    @property
    def full_mask(self) -> int:
        """Mask with every slot of the grid set."""
        return (1 << self.size) - 1

    def slot(self, day: int, period: int) -> int:
        """Slot index for a (day, period) pair."""
        if not (0 <= day < self.days and 0 <= period < self.periods):
            raise ValueError(f"({day}, {period}) is outside a {self.days}x{self.periods} grid")
        return day * self.periods + period

    def day_of(self, slot: int) -> int:
        return slot // self.periods

    def period_of(self, slot: int) -> int:
        return slot % self.periods

    def split(self, slot: int) -> tuple[int, int]:
        """Split a slot index into (day, period)."""
        return divmod(slot, self.periods)

    def contains(self, slot: int) -> bool:
        return 0 <= slot < self.size

    def slots(self) -> range:
        return range(self.size)

    def day_slots(self, day: int) -> range:
        """All slot indices of one day."""
        start = day * self.periods
        return range(start, start + self.periods)

    def day_mask(self, day: int) -> int:
        """Mask covering every period of one day."""
        return ((1 << self.periods) - 1) << (day * self.periods)

    def period_mask(self, period: int) -> int:
        """Mask covering one period on every day."""
        mask = 0
        for day in range(self.days):
            mask |= 1 << (day * self.periods + period)
        return mask

    def are_adjacent(self, slot_a: int, slot_b: int) -> bool:
        """Check if two slots are back-to-back periods of the same day."""
        day_a, period_a = self.split(slot_a)
        day_b, period_b = self.split(slot_b)
        return day_a == day_b and abs(period_a - period_b) == 1

    def describe(self, slot: int) -> str:
        """Human readable slot label (e.g., 'monday period 1')."""
        day, period = self.split(slot)
        return f"{get_day_name(day)} period {period + 1}"


def slot_bit(slot: int) -> int:
    """Single-bit mask for a slot."""
    return 1 << slot


def set_slot(mask: int, slot: int) -> int:
    return mask | (1 << slot)


def clear_slot(mask: int, slot: int) -> int:
    return mask & ~(1 << slot)


def is_slot_set(mask: int, slot: int) -> bool:
    return (mask >> slot) & 1 == 1


def count_slots(mask: int) -> int:
    """Number of slots set in a mask."""
    return bin(mask).count("1")


def iter_slots(mask: int):
    """Yield the slot indices set in a mask, lowest first."""
    slot = 0
    while mask:
        if mask & 1:
            yield slot
        mask >>= 1
        slot += 1


def mask_from_slots(slots) -> int:
    """Build a mask from an iterable of slot indices."""
    mask = 0
    for slot in slots:
        mask |= 1 << slot
    return mask


def parse_mask(value) -> int:
    """Decode a forbidden mask stored as an integer or a string-encoded integer.

    Strings may carry a ``0x`` or ``0b`` prefix. Empty values decode to 0.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid slot mask: {value!r}")
    if isinstance(value, int):
        mask = value
    else:
        text = str(value).strip().lower()
        base = 0 if text.startswith(("0x", "0b", "0o")) else 10
        mask = int(text, base)
    if mask < 0:
        raise ValueError(f"Slot mask must be non-negative, got {value!r}")
    return mask


def encode_mask(mask: int) -> str:
    """Encode a mask as a decimal string for storage."""
    return str(mask)
