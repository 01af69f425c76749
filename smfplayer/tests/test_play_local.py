import unittest
from unittest import mock

from smfplayer import play_local


class RecordingOut:
    def __init__(self):
        self.sent = []

    def send(self, msg):
        self.sent.append(msg)


class TestPanicFlag(unittest.TestCase):
    def test_panic_only_silences_the_port(self):
        out = RecordingOut()
        with mock.patch.object(play_local, "open_mido_output", return_value=out) as opener, \
                mock.patch.object(play_local, "run") as run, \
                mock.patch("sys.argv", ["smfplay", "--panic", "--port", "IAC"]):
            with self.assertRaises(SystemExit) as cm:
                play_local.main()
        self.assertEqual(cm.exception.code, 0)
        opener.assert_called_once_with("IAC")
        run.assert_not_called()
        self.assertEqual(len(out.sent), 48)
        self.assertEqual({m.control for m in out.sent}, {64, 120, 123})
        self.assertEqual({m.channel for m in out.sent}, set(range(16)))

    def test_file_required_without_panic(self):
        with mock.patch("sys.argv", ["smfplay"]), mock.patch("sys.stderr"):
            with self.assertRaises(SystemExit) as cm:
                play_local.main()
        self.assertEqual(cm.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
