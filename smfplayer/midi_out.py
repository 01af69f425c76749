from __future__ import annotations

from typing import Any, Optional

from smfplayer.events import EventKind, MidiEvent


def to_mido(event: MidiEvent):
    """Build a mido.Message for a channel or sysex event; None for meta events."""
    import mido

    d = event.data
    if event.name == "Sysex":
        body = bytes(d)
        if body.endswith(b"\xf7"):
            body = body[:-1]
        # mido rejects data bytes above 0x7F
        if any(b > 0x7F for b in body):
            return None
        return mido.Message("sysex", data=body)
    if not event.is_channel_event:
        return None
    ch = event.channel
    if event.name == "Note on":
        return mido.Message("note_on", note=d[0], velocity=d[1], channel=ch)
    if event.name == "Note off":
        return mido.Message("note_off", note=d[0], velocity=d[1], channel=ch)
    if event.name == "Polyphonic Key Pressure":
        return mido.Message("polytouch", note=d[0], value=d[1], channel=ch)
    if event.name == "Controller Change":
        return mido.Message("control_change", control=d[0], value=d[1], channel=ch)
    if event.name == "Program Change":
        return mido.Message("program_change", program=d[0], channel=ch)
    if event.name == "Channel Key Pressure":
        return mido.Message("aftertouch", value=d[0], channel=ch)
    if event.name == "Pitch Bend":
        return mido.Message("pitchwheel", pitch=((d[1] << 7) | d[0]) - 8192, channel=ch)
    return None


class CoreSink:
    """Abstract sink interface used by the player."""

    def send_event(self, event: MidiEvent) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def panic(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class MidoSink(CoreSink):
    def __init__(self, out_port):
        self.out = out_port
        self.sent = 0

    def attach(self, player) -> "MidoSink":
        player.on(EventKind.MIDI_EVENT, self.send_event)
        return self

    def send_event(self, event: MidiEvent) -> None:
        msg = to_mido(event)
        if msg is None:
            return
        self.out.send(msg)
        self.sent += 1

    def panic(self) -> None:
        import mido

        # Send All Notes Off across all channels
        for ch in range(16):
            # Sustain off
            self.out.send(mido.Message("control_change", control=64, value=0, channel=ch))
            # All Sound Off (120) then All Notes Off (123)
            self.out.send(mido.Message("control_change", control=120, value=0, channel=ch))
            self.out.send(mido.Message("control_change", control=123, value=0, channel=ch))


def _dummy_out():
    class _DummyOut:
        def send(self, *_args: Any, **_kwargs: Any) -> None:
            pass

        def close(self) -> None:
            pass

    return _DummyOut()


def open_mido_output(name_filter: Optional[str] = None):
    """Open a Mido output port with safe fallbacks.

    - If the system MIDI stack is inaccessible (no backend, sandboxed CI),
      return a dummy object exposing `.send()`.
    - If a specific port is requested but not found, also fall back to dummy
      rather than crashing in headless environments.
    """
    import mido

    try:
        names = mido.get_output_names()
    except Exception as e:
        print(f"[midi-out] MIDI backend unavailable ({e}); using dummy output", flush=True)
        return _dummy_out()
    if name_filter:
        names = [n for n in names if name_filter in n]
    if not names:
        print(f"[midi-out] no output port matching {name_filter!r}; using dummy output", flush=True)
        return _dummy_out()
    try:
        return mido.open_output(names[0])
    except Exception as e:
        print(f"[midi-out] could not open {names[0]!r} ({e}); using dummy output", flush=True)
        return _dummy_out()
