import unittest

from smfplayer.events import EventBus, EventKind, MidiEvent, note_name


class TestEventBus(unittest.TestCase):
    def test_listeners_run_in_registration_order(self):
        bus = EventBus()
        calls = []
        bus.on(EventKind.PLAYING, lambda d: calls.append(("a", d["tick"])))
        bus.on("playing", lambda d: calls.append(("b", d["tick"])))
        bus.emit(EventKind.PLAYING, {"tick": 7})
        self.assertEqual(calls, [("a", 7), ("b", 7)])

    def test_off_and_default_payload(self):
        bus = EventBus()
        seen = []
        bus.on(EventKind.END_OF_FILE, seen.append)
        bus.emit(EventKind.END_OF_FILE)
        bus.off(EventKind.END_OF_FILE, seen.append)
        bus.emit(EventKind.END_OF_FILE)
        self.assertEqual(seen, [{}])

    def test_unknown_kind_rejected(self):
        with self.assertRaises(ValueError):
            EventBus().on("noteOn", print)

    def test_listener_exception_propagates(self):
        bus = EventBus()
        later = []

        def boom(_):
            raise KeyError("x")

        bus.on(EventKind.MIDI_EVENT, boom)
        bus.on(EventKind.MIDI_EVENT, later.append)
        with self.assertRaises(KeyError):
            bus.emit(EventKind.MIDI_EVENT, MidiEvent(tick=0, name="Marker", data="A"))
        self.assertEqual(later, [])


class TestMidiEvent(unittest.TestCase):
    def test_as_dict_shape(self):
        on = MidiEvent(tick=96, name="Note on", data=(60, 100), channel=1, track=2)
        self.assertEqual(
            on.as_dict(),
            {"tick": 96, "name": "Note on", "track": 2, "data": [60, 100], "channel": 1, "noteName": "C4"},
        )
        meta = MidiEvent(tick=0, name="Time Signature", data=b"\x04\x02\x18\x08")
        self.assertEqual(meta.as_dict(), {"tick": 0, "name": "Time Signature", "track": 0, "data": [4, 2, 24, 8]})
        self.assertFalse(meta.is_channel_event)

    def test_note_name(self):
        self.assertEqual(note_name(21), "A0")
        self.assertEqual(note_name(61), "C#4")


if __name__ == "__main__":
    unittest.main()
