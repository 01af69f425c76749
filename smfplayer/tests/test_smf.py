import base64
import struct
import unittest

from smfplayer.smf import (
    DecodeError,
    InvalidMidiFile,
    VLQ_MAX,
    decode_data_uri,
    find_track_chunks,
    parse_header,
    read_vlq,
    write_vlq,
)


def make_header(fmt=1, ntracks=1, division=96):
    return b"MThd" + struct.pack(">LHHH", 6, fmt, ntracks, division)


def make_chunk(payload: bytes, magic=b"MTrk"):
    return magic + struct.pack(">L", len(payload)) + payload


class TestVlq(unittest.TestCase):
    def test_boundary_values_roundtrip(self):
        for value in (0, 127, 128, 16383, 16384, 2097151, VLQ_MAX):
            encoded = write_vlq(value)
            decoded, end = read_vlq(encoded, 0)
            self.assertEqual(decoded, value)
            self.assertEqual(end, len(encoded))

    def test_known_encodings(self):
        self.assertEqual(write_vlq(0), b"\x00")
        self.assertEqual(write_vlq(128), b"\x81\x00")
        self.assertEqual(write_vlq(16383), b"\xff\x7f")
        self.assertEqual(write_vlq(VLQ_MAX), b"\xff\xff\xff\x7f")

    def test_read_at_offset(self):
        data = b"\xaa\x81\x00\x42"
        self.assertEqual(read_vlq(data, 1), (128, 3))

    def test_truncated_vlq_is_detected(self):
        with self.assertRaises(DecodeError) as cm:
            read_vlq(b"\x81\x80", 0)
        self.assertEqual(cm.exception.offset, 0)
        with self.assertRaises(DecodeError):
            read_vlq(b"", 0)

    def test_overlong_vlq_is_rejected(self):
        with self.assertRaises(DecodeError):
            read_vlq(b"\x81\x81\x81\x81\x01", 0)

    def test_write_out_of_range(self):
        with self.assertRaises(ValueError):
            write_vlq(-1)
        with self.assertRaises(ValueError):
            write_vlq(VLQ_MAX + 1)


class TestHeader(unittest.TestCase):
    def test_parse_format_and_division(self):
        self.assertEqual(parse_header(make_header(fmt=0, division=480)), (0, 480))
        self.assertEqual(parse_header(make_header(fmt=2, division=96)), (2, 96))

    def test_bad_magic(self):
        with self.assertRaises(InvalidMidiFile):
            parse_header(b"RIFF" + b"\x00" * 10)

    def test_smpte_and_zero_division_rejected(self):
        with self.assertRaises(InvalidMidiFile):
            parse_header(make_header(division=0xE728))
        with self.assertRaises(InvalidMidiFile):
            parse_header(make_header(division=0))


class TestChunkScan(unittest.TestCase):
    def test_tracks_found_in_scan_order(self):
        buf = make_header(ntracks=2) + make_chunk(b"\x00\xff\x2f\x00") + make_chunk(b"\x00\x90\x3c\x40")
        tracks = find_track_chunks(buf)
        self.assertEqual(tracks, [b"\x00\xff\x2f\x00", b"\x00\x90\x3c\x40"])

    def test_unknown_chunks_are_skipped(self):
        buf = make_header() + make_chunk(b"junk", magic=b"XFIH") + make_chunk(b"\x00\xff\x2f\x00")
        self.assertEqual(find_track_chunks(buf), [b"\x00\xff\x2f\x00"])

    def test_marker_inside_payload_is_not_a_track(self):
        payload = b"\x00\xff\x01\x04MTrk\x00\xff\x2f\x00"
        buf = make_header() + make_chunk(payload)
        self.assertEqual(find_track_chunks(buf), [payload])

    def test_overshooting_length_is_clipped(self):
        buf = make_header() + b"MTrk" + struct.pack(">L", 100) + b"\x00\xff\x2f\x00"
        self.assertEqual(find_track_chunks(buf), [b"\x00\xff\x2f\x00"])


class TestDataUri(unittest.TestCase):
    def test_decodes_payload_after_comma(self):
        raw = make_header()
        uri = "data:audio/midi;base64," + base64.b64encode(raw).decode("ascii")
        self.assertEqual(decode_data_uri(uri), raw)

    def test_bare_base64(self):
        self.assertEqual(decode_data_uri(base64.b64encode(b"MThd").decode("ascii")), b"MThd")


if __name__ == "__main__":
    unittest.main()
