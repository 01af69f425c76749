from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, List, Optional, Tuple

from smfplayer.events import (
    CHANNEL_EVENTS,
    META_END_OF_TRACK,
    META_EVENTS,
    META_SET_TEMPO,
    META_STATUS,
    SYSEX_STATUSES,
    TEXT_META_TYPES,
    MidiEvent,
)
from smfplayer.smf import DecodeError, read_vlq
from smfplayer.tempo_map import TempoOverlay, usec_to_bpm


@dataclass(frozen=True)
class DecoderState:
    """Position of one track decoder; safe to keep as a checkpoint."""

    pointer: int = 0
    tick: int = 0
    running_status: Optional[int] = None
    last_tick: int = 0
    ended: bool = False


def _take(data: bytes, pos: int, n: int) -> bytes:
    if pos + n > len(data):
        raise DecodeError(f"need {n} bytes, {len(data) - pos} left", pos)
    return data[pos:pos + n]


def _meta_payload(meta_type: int, payload: bytes, pos: int) -> Tuple[str, Any]:
    name = META_EVENTS.get(meta_type, f"Unknown: 0x{meta_type:02X}")
    if meta_type == META_SET_TEMPO:
        if len(payload) < 3:
            raise DecodeError("Set Tempo payload shorter than 3 bytes", pos)
        usec = int.from_bytes(payload[:3], "big")
        if usec == 0:
            raise DecodeError("Set Tempo of zero microseconds", pos)
        return name, usec_to_bpm(usec)
    if meta_type == META_END_OF_TRACK:
        return name, None
    if meta_type == 0x00:
        return name, int.from_bytes(payload, "big") if payload else None
    if meta_type in (0x20, 0x21):
        return name, payload[0] if payload else None
    if meta_type in TEXT_META_TYPES:
        return name, payload.decode("latin-1")
    return name, bytes(payload)


def decode_event(data: bytes, state: DecoderState, track: int = 0) -> Tuple[MidiEvent, DecoderState]:
    """Decode the event at `state.pointer`; returns the event and the next state.

    `state` is never mutated. Any malformed input raises DecodeError tagged
    with `track`.
    """
    try:
        return _decode(data, state, track)
    except DecodeError as e:
        raise e.for_track(track) from None


def _decode(data: bytes, state: DecoderState, track: int) -> Tuple[MidiEvent, DecoderState]:
    start = state.pointer
    delta, pos = read_vlq(data, start)
    abs_tick = state.tick + delta
    if pos >= len(data):
        raise DecodeError("delta-time without event body", pos)

    running = False
    status = data[pos]
    if status & 0x80:
        pos += 1
        running_status = status
    else:
        if state.running_status is None:
            raise DecodeError("data byte with no running status", pos)
        status = state.running_status
        running_status = status
        running = True

    channel: Optional[int] = None
    ended = False
    if status == META_STATUS:
        meta_type = _take(data, pos, 1)[0]
        length, pos = read_vlq(data, pos + 1)
        payload = _take(data, pos, length)
        name, value = _meta_payload(meta_type, payload, pos)
        pos += length
        ended = meta_type == META_END_OF_TRACK
    elif status in SYSEX_STATUSES:
        length, pos = read_vlq(data, pos)
        value = bytes(_take(data, pos, length))
        pos += length
        name = "Sysex"
    else:
        kind = CHANNEL_EVENTS.get(status >> 4)
        if kind is None:
            raise DecodeError(f"unsupported status byte 0x{status:02X}", pos - 1)
        name, nbytes = kind
        value = tuple(_take(data, pos, nbytes))
        pos += nbytes
        channel = status & 0x0F

    event = MidiEvent(
        tick=abs_tick,
        name=name,
        data=value,
        channel=channel,
        track=track,
        delta=delta,
        byte_index=start,
        status=status,
        running=running,
    )
    new_state = DecoderState(
        pointer=pos,
        tick=abs_tick,
        running_status=running_status,
        last_tick=abs_tick,
        ended=ended,
    )
    return event, new_state


class Track:
    """Incremental decoder over one MTrk payload.

    Bytes are consumed only when an event is actually produced; a lookup of
    an event that is not yet due leaves the state untouched.
    """

    def __init__(self, index: int, data: bytes):
        self.index = index
        self.data = bytes(data)
        self.state = DecoderState()
        self.enabled = True
        self.events: List[MidiEvent] = []
        self.overlay = TempoOverlay()
        # Tempo implied by this track's last Set Tempo (after overlay)
        self.tempo: Optional[float] = None

    # Mirrors of the state fields used by the player
    @property
    def pointer(self) -> int:
        return self.state.pointer

    @property
    def delta(self) -> int:
        return self.state.tick

    @property
    def finished(self) -> bool:
        return self.state.ended or self.state.pointer >= len(self.data)

    def peek_tick(self) -> Optional[int]:
        """Absolute tick of the next event, or None when the track is finished."""
        if self.finished:
            return None
        try:
            delta, _ = read_vlq(self.data, self.state.pointer)
        except DecodeError as e:
            raise e.for_track(self.index) from None
        return self.state.tick + delta

    def decode(self, current_tick: Optional[int] = None) -> MidiEvent:
        event, new_state = decode_event(self.data, self.state, self.index)
        if current_tick is not None:
            new_state = replace(new_state, last_tick=current_tick)
        self.state = new_state
        if event.name == "Set Tempo":
            self.tempo = self.overlay.effective(event.data)
        return event

    def handle_event(self, current_tick: int, dry_run: bool = False) -> Optional[MidiEvent]:
        """Decode the next event if it is due at `current_tick`.

        Dry runs ignore timing and record every event in `self.events`.
        Disabled tracks still consume their bytes but return None.
        """
        if self.finished:
            return None
        if not dry_run:
            due = self.peek_tick()
            if due is None or due > current_tick:
                return None
        event = self.decode(None if dry_run else current_tick)
        if dry_run:
            self.events.append(event)
        return event if self.enabled else None

    def snapshot(self) -> DecoderState:
        return self.state

    def check_state(self, state: DecoderState) -> None:
        if not isinstance(state, DecoderState):
            raise TypeError(f"expected DecoderState, got {type(state).__name__}")
        if not (0 <= state.pointer <= len(self.data)):
            raise ValueError(f"track {self.index}: pointer {state.pointer} outside 0..{len(self.data)}")
        if state.tick < 0:
            raise ValueError(f"track {self.index}: negative tick {state.tick}")

    def restore(self, state: DecoderState) -> None:
        self.check_state(state)
        self.state = state

    def reset(self) -> None:
        self.state = DecoderState()
        self.events = []

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False
