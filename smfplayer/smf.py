from __future__ import annotations

import base64
import struct
from typing import List, Optional, Tuple


HEADER_MAGIC = b"MThd"
TRACK_MAGIC = b"MTrk"
# Header chunk is assumed to be exactly 14 bytes (magic + length + 6 bytes)
HEADER_SIZE = 14
CHUNK_HEADER_SIZE = 8
VLQ_MAX = 0x0FFFFFFF


class InvalidMidiFile(ValueError):
    pass


class DecodeError(ValueError):
    """Raised when a track byte stream cannot be decoded.

    `offset` is the byte position inside the track slice where decoding
    failed; `track` is the track index when known.
    """

    def __init__(self, msg: str, offset: int = -1, track: Optional[int] = None):
        super().__init__(msg)
        self.msg = msg
        self.offset = offset
        self.track = track

    def __str__(self) -> str:
        where = f"track {self.track} " if self.track is not None else ""
        at = f"@{self.offset}: " if self.offset >= 0 else ""
        return f"{where}{at}{self.msg}"

    def for_track(self, track: int) -> "DecodeError":
        return DecodeError(self.msg, self.offset, track)


def read_vlq(data: bytes, pos: int) -> Tuple[int, int]:
    """Read a variable-length quantity at `pos`.

    Returns (value, next_pos). At most 4 bytes are read; a sequence that runs
    off the end of `data` or past 4 bytes raises DecodeError.
    """
    value = 0
    i = pos
    for _ in range(4):
        if i >= len(data):
            raise DecodeError("truncated variable-length quantity", pos)
        b = data[i]
        i += 1
        value = (value << 7) | (b & 0x7F)
        if not b & 0x80:
            return value, i
    raise DecodeError("variable-length quantity longer than 4 bytes", pos)


def write_vlq(value: int) -> bytes:
    if value < 0 or value > VLQ_MAX:
        raise ValueError(f"value out of VLQ range: {value}")
    out = [value & 0x7F]
    value >>= 7
    while value:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    return bytes(reversed(out))


def validate(buf: bytes) -> bool:
    return bytes(buf[0:4]) == HEADER_MAGIC


def read_format(buf: bytes) -> int:
    # 0 = single track, 1 = simultaneous tracks, 2 = independent tracks
    (fmt,) = struct.unpack(">H", bytes(buf[8:10]))
    return fmt


def read_division(buf: bytes) -> int:
    (division,) = struct.unpack(">H", bytes(buf[12:14]))
    if division & 0x8000:
        raise InvalidMidiFile("SMPTE time division is not supported")
    if division == 0:
        raise InvalidMidiFile("division must be > 0")
    return division


def parse_header(buf: bytes) -> Tuple[int, int]:
    """Return (format, division) or raise InvalidMidiFile."""
    if not validate(buf):
        raise InvalidMidiFile("Invalid MIDI file; should start with MThd")
    if len(buf) < HEADER_SIZE:
        raise InvalidMidiFile("header chunk truncated")
    return read_format(buf), read_division(buf)


def find_track_chunks(buf: bytes) -> List[bytes]:
    """Scan the whole buffer for MTrk markers; scan order is track order.

    Each chunk's payload is clipped to the buffer if the declared length
    overshoots it. Scanning resumes after the payload so bytes inside a
    track are never mistaken for a marker.
    """
    tracks: List[bytes] = []
    data = bytes(buf)
    idx = data.find(TRACK_MAGIC)
    while idx >= 0 and idx + CHUNK_HEADER_SIZE <= len(data):
        (length,) = struct.unpack(">L", data[idx + 4:idx + 8])
        start = idx + CHUNK_HEADER_SIZE
        tracks.append(data[start:start + length])
        idx = data.find(TRACK_MAGIC, start + length)
    return tracks


def decode_data_uri(uri: str) -> bytes:
    """Decode `data:audio/midi;base64,....` (or a bare base64 string)."""
    payload = uri.split(",", 1)[1] if "," in uri else uri
    try:
        return base64.b64decode(payload, validate=False)
    except (ValueError, TypeError) as e:
        raise InvalidMidiFile(f"bad base64 payload: {e}") from e
