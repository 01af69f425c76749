from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


# Channel status high nibble -> (name, number of data bytes)
CHANNEL_EVENTS: Dict[int, tuple] = {
    0x8: ("Note off", 2),
    0x9: ("Note on", 2),
    0xA: ("Polyphonic Key Pressure", 2),
    0xB: ("Controller Change", 2),
    0xC: ("Program Change", 1),
    0xD: ("Channel Key Pressure", 1),
    0xE: ("Pitch Bend", 2),
}

META_EVENTS: Dict[int, str] = {
    0x00: "Sequence Number",
    0x01: "Text Event",
    0x02: "Copyright Notice",
    0x03: "Sequence/Track Name",
    0x04: "Instrument Name",
    0x05: "Lyric",
    0x06: "Marker",
    0x07: "Cue Point",
    0x09: "Device Name",
    0x20: "MIDI Channel Prefix",
    0x21: "MIDI Port",
    0x2F: "End of Track",
    0x51: "Set Tempo",
    0x54: "SMTPE Offset",
    0x58: "Time Signature",
    0x59: "Key Signature",
    0x7F: "Sequencer-Specific Meta-event",
}

META_STATUS = 0xFF
SYSEX_STATUSES = (0xF0, 0xF7)
META_END_OF_TRACK = 0x2F
META_SET_TEMPO = 0x51
TEXT_META_TYPES = frozenset(range(0x01, 0x0A))

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]


def note_name(number: int) -> str:
    """Note number to name with C4 = 60."""
    return f"{NOTE_NAMES[number % 12]}{number // 12 - 1}"


@dataclass(frozen=True)
class MidiEvent:
    tick: int
    name: str
    data: Any = None
    channel: Optional[int] = None
    track: int = 0
    delta: int = 0
    byte_index: int = 0
    status: int = 0
    running: bool = False

    @property
    def is_channel_event(self) -> bool:
        return self.channel is not None

    def as_dict(self) -> Dict[str, Any]:
        """Published shape: {tick, name, channel?, data}; bytes become int lists."""
        data = self.data
        if isinstance(data, (bytes, tuple)):
            data = list(data)
        out: Dict[str, Any] = {"tick": self.tick, "name": self.name, "track": self.track, "data": data}
        if self.channel is not None:
            out["channel"] = self.channel
        if self.name in ("Note on", "Note off"):
            out["noteName"] = note_name(self.data[0])
        return out


class EventKind(str, Enum):
    MIDI_EVENT = "midiEvent"
    PLAYING = "playing"
    END_OF_FILE = "endOfFile"
    FILE_LOADED = "fileLoaded"


Listener = Callable[[Any], None]


class EventBus:
    """One listener list per EventKind, invoked synchronously in registration order.

    A listener that raises aborts the emit (and the tick that called it).
    """

    def __init__(self) -> None:
        self._listeners: Dict[EventKind, List[Listener]] = {k: [] for k in EventKind}

    def on(self, kind: Union[EventKind, str], fn: Listener) -> None:
        self._listeners[EventKind(kind)].append(fn)

    def off(self, kind: Union[EventKind, str], fn: Listener) -> None:
        lst = self._listeners[EventKind(kind)]
        if fn in lst:
            lst.remove(fn)

    def emit(self, kind: EventKind, data: Any = None) -> None:
        # Copy so a listener may unsubscribe itself mid-emit
        for fn in list(self._listeners[kind]):
            fn(data if data is not None else {})
