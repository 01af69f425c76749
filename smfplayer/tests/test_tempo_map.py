import unittest

from smfplayer.tempo_map import TempoOverlay, bpm_to_usec, ticks_per_ms, usec_to_bpm


class TestTempoMap(unittest.TestCase):
    def test_ticks_per_ms(self):
        # 96 ppq at 120 BPM = 192 ticks/s
        self.assertAlmostEqual(ticks_per_ms(96, 120), 0.192)
        self.assertAlmostEqual(ticks_per_ms(480, 60), 0.48)

    def test_usec_bpm_conversions(self):
        self.assertEqual(usec_to_bpm(500_000), 120)
        self.assertEqual(usec_to_bpm(1_000_000), 60)
        self.assertEqual(bpm_to_usec(120), 500_000)
        with self.assertRaises(ValueError):
            usec_to_bpm(0)

    def test_overlay_offsets_supplied_tempo(self):
        overlay = TempoOverlay(forced=140, original=100)
        self.assertEqual(overlay.effective(90), 130)
        self.assertEqual(overlay.effective(100), 140)

    def test_overlay_passthrough_when_unset(self):
        self.assertEqual(TempoOverlay().effective(95), 95)
        overlay = TempoOverlay(forced=150)
        self.assertEqual(overlay.effective(95), 150)
        overlay.clear()
        self.assertEqual(overlay.effective(95), 95)


if __name__ == "__main__":
    unittest.main()
