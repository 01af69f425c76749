from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


DEFAULT_BPM = 120.0
USEC_PER_MINUTE = 60_000_000


def ticks_per_ms(division: int, bpm: float) -> float:
    """Ticks per millisecond for `division` ticks per quarter at `bpm`."""
    return division * bpm / 60000.0


def usec_to_bpm(usec: int) -> float:
    """Map a Set Tempo value (microseconds per quarter note) to BPM."""
    if usec <= 0:
        raise ValueError(f"tempo must be positive, got {usec}")
    return USEC_PER_MINUTE / usec


def bpm_to_usec(bpm: float) -> int:
    if bpm <= 0:
        raise ValueError(f"bpm must be positive, got {bpm}")
    return int(round(USEC_PER_MINUTE / bpm))


@dataclass
class TempoOverlay:
    """Additive tempo override: effective = supplied + (forced - original).

    With no forced tempo the supplied tempo passes through. A forced tempo
    with no recorded original tempo is used as-is.
    """

    forced: Optional[float] = None
    original: Optional[float] = None

    def effective(self, supplied: float) -> float:
        if self.forced is None:
            return float(supplied)
        if self.original is None:
            return float(self.forced)
        return float(supplied) + (self.forced - self.original)

    def clear(self) -> None:
        self.forced = None
        self.original = None
