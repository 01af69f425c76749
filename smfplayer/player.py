from __future__ import annotations

import contextlib
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from smfplayer.clock import DEFAULT_INTERVAL_MS, InternalClock
from smfplayer.events import EventBus, EventKind, Listener, MidiEvent
from smfplayer.smf import CHUNK_HEADER_SIZE, HEADER_SIZE, decode_data_uri, find_track_chunks, parse_header
from smfplayer.tempo_map import DEFAULT_BPM, TempoOverlay, ticks_per_ms
from smfplayer.track import DecoderState, Track


class AlreadyPlaying(RuntimeError):
    pass


class PlayerState(str, Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class Checkpoint:
    """Decoder positions of every track at a tick boundary.

    `states[i]` holds track i after all of its events with tick < `tick`
    were consumed. `tempo` is the file tempo in effect at `tick`.
    """

    tick: int
    tempo: float
    states: Tuple[DecoderState, ...]


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class Player:
    """SMF playback session and scheduler.

    - Load: magic check, division, format, MTrk scan, then a dry run that
      decodes every track once to populate `events` and `total_ticks`.
    - Play: a fixed-interval clock calls `on_tick()`, which maps elapsed
      wall time to a tick and lets each track emit at most one due event.
    - Tracks are drained independently; there is no cross-track ordering.
    - A Set Tempo event updates `tempo` before later tracks in the same pass
      run; earlier tracks see it on the next pass.
    """

    def __init__(
        self,
        event_handler: Optional[Listener] = None,
        buffer: Optional[bytes] = None,
        sample_rate_ms: float = DEFAULT_INTERVAL_MS,
        now: Optional[Callable[[], float]] = None,
    ) -> None:
        self.sample_rate_ms = float(sample_rate_ms)
        self._now = now or _monotonic_ms
        self.buffer: bytes = b""
        self.division: int = 0
        self.format: int = 0
        self.tracks: List[Track] = []
        self.events: List[List[MidiEvent]] = []
        self.tempo: float = DEFAULT_BPM
        self.overlay = TempoOverlay()
        # Wall-clock origin in ms; None while paused/stopped
        self.start_time: Optional[float] = None
        self.start_tick: int = 0
        self.tick: int = 0
        self.total_ticks: int = 0
        self.state = PlayerState.STOPPED
        self.bus = EventBus()
        self.clock: Optional[InternalClock] = None
        self.last_error: Optional[BaseException] = None
        self.metrics: Dict[str, int] = {
            "ticks": 0,
            "events_emitted": 0,
            "dropped_ticks": 0,
        }
        # Busy guard: a tick that finds it held is dropped, never queued
        self._busy = threading.Lock()
        self._busy_owner: Optional[int] = None
        # Bumped by stop/pause/seek so an in-flight pass can notice and bail
        self._generation = 0
        # Last tempo the file itself asked for, before the overlay
        self._file_tempo: Optional[float] = None
        if event_handler is not None:
            self.on(EventKind.MIDI_EVENT, event_handler)
        if buffer is not None:
            self.load_bytes(buffer)

    # --- Loading ---
    def load_bytes(self, data: bytes) -> "Player":
        self.buffer = bytes(data)
        return self.file_loaded()

    def load_data_uri(self, uri: str) -> "Player":
        self.buffer = decode_data_uri(uri)
        return self.file_loaded()

    def load_file(self, path: Union[str, Path]) -> "Player":
        with open(path, "rb") as f:
            self.buffer = f.read()
        return self.file_loaded()

    def file_loaded(self) -> "Player":
        if self.state is not PlayerState.STOPPED:
            self.stop()
        fmt, division = parse_header(self.buffer)
        self.format = fmt
        self.division = division
        self._file_tempo = None
        self.tracks = []
        for i, chunk in enumerate(find_track_chunks(self.buffer)):
            track = Track(i, chunk)
            track.overlay = TempoOverlay(self.overlay.forced, self.overlay.original)
            self.tracks.append(track)
        return self.dry_run()

    # --- Subscriptions ---
    def on(self, kind: Union[EventKind, str], fn: Listener) -> "Player":
        self.bus.on(kind, fn)
        return self

    def emit_event(self, event: MidiEvent, now: Optional[float] = None) -> None:
        """Publish a decoded event; `now` is the wall time of the pass that produced it."""
        if event.name == "Set Tempo":
            self._file_tempo = float(event.data)
            self._set_live_tempo(self.overlay.effective(event.data), now)
        self.metrics["events_emitted"] += 1
        self.bus.emit(EventKind.MIDI_EVENT, event)

    # --- Tempo ---
    def set_forced_tempo(self, bpm: Optional[float]) -> None:
        """Force a tempo for the whole song; None clears the override.

        Takes effect immediately, also while playing: the playhead keeps its
        position and only the rate changes. Clearing falls back to the last
        tempo the file set.
        """
        with self._exclusive():
            self.overlay.forced = None if bpm is None else float(bpm)
            for track in self.tracks:
                track.overlay.forced = self.overlay.forced
            self._set_live_tempo(self.overlay.effective(self.file_tempo()), self._now())

    def set_original_tempo(self, bpm: Optional[float]) -> None:
        self.overlay.original = None if bpm is None else float(bpm)
        for track in self.tracks:
            track.overlay.original = self.overlay.original

    def file_tempo(self) -> float:
        """Tempo the file currently asks for, ignoring any override."""
        if self._file_tempo is not None:
            return self._file_tempo
        return self.initial_tempo()

    def _set_live_tempo(self, bpm: float, now: Optional[float] = None) -> None:
        # Rebase so the tick position stays continuous across the change
        if self.start_time is not None and now is not None:
            self.start_tick = self._tick_at(now)
            self.start_time = now
        self.tempo = float(bpm)

    # --- Tracks ---
    def enable_track(self, number: int) -> "Player":
        self._track_by_number(number).enable()
        return self

    def disable_track(self, number: int) -> "Player":
        self._track_by_number(number).disable()
        return self

    def _track_by_number(self, number: int) -> Track:
        if not 1 <= number <= len(self.tracks):
            raise IndexError(f"track number {number} outside 1..{len(self.tracks)}")
        return self.tracks[number - 1]

    def reset_tracks(self) -> None:
        for track in self.tracks:
            track.reset()

    # --- Scheduling ---
    def current_tick(self) -> int:
        if self.start_time is None:
            return self.start_tick
        return self._tick_at(self._now())

    def _tick_at(self, now: float) -> int:
        if self.start_time is None:
            return self.start_tick
        elapsed_s = (now - self.start_time) / 1000.0
        return _round_half_up(elapsed_s * ticks_per_ms(self.division, self.tempo) * 1000.0) + self.start_tick

    def on_tick(self, dry_run: bool = False) -> None:
        """Run one scheduling pass; dropped if another pass is in flight."""
        if not self._busy.acquire(blocking=False):
            self.metrics["dropped_ticks"] += 1
            return
        self._busy_owner = threading.get_ident()
        try:
            self._loop(dry_run)
        finally:
            self._busy_owner = None
            self._busy.release()

    def _loop(self, dry_run: bool) -> None:
        if dry_run:
            for track in self.tracks:
                track.handle_event(self.tick, dry_run=True)
            return
        if self.state is not PlayerState.PLAYING:
            return
        self.metrics["ticks"] += 1
        now = self._now()
        self.tick = self._tick_at(now)
        if self.end_of_file():
            self.bus.emit(EventKind.END_OF_FILE)
            self.stop()
            return
        generation = self._generation
        for track in self.tracks:
            event = track.handle_event(self.tick)
            if event is not None:
                self.emit_event(event, now)
                if self._generation != generation:
                    # A listener paused, stopped or seeked
                    return
        self.bus.emit(EventKind.PLAYING, {"tick": self.tick})

    def _on_clock(self) -> None:
        try:
            self.on_tick()
        except Exception as e:
            print(f"[player] tick aborted: {e}", flush=True)
            self.last_error = e
            self.stop()

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        # Inline when called from inside a tick (listener), else wait for it
        if self._busy_owner == threading.get_ident():
            yield
            return
        with self._busy:
            self._busy_owner = threading.get_ident()
            try:
                yield
            finally:
                self._busy_owner = None

    def _halt_clock(self) -> None:
        if self.clock is not None:
            self.clock.stop()
            self.clock = None

    # --- Transport ---
    def start(self) -> "Player":
        if self.state is PlayerState.PLAYING:
            raise AlreadyPlaying("Already playing...")
        if self.start_time is None:
            self.start_time = self._now()
        self.last_error = None
        self.state = PlayerState.PLAYING
        self.clock = InternalClock(self._on_clock, interval_ms=self.sample_rate_ms)
        self.clock.start()
        return self

    play = start

    def pause(self) -> "Player":
        with self._exclusive():
            self._halt_clock()
            self.start_tick = self.tick
            self.start_time = None
            self._generation += 1
            self.state = PlayerState.PAUSED
        return self

    def stop(self) -> "Player":
        with self._exclusive():
            self._halt_clock()
            self.start_tick = 0
            self.start_time = None
            self.tick = 0
            self.reset_tracks()
            self._generation += 1
            self.state = PlayerState.STOPPED
        return self

    def is_playing(self) -> bool:
        return self.state is PlayerState.PLAYING

    def seek(self, tempo: float, tick: int, states: Sequence[DecoderState]) -> "Player":
        """Pause and reposition every track from caller-supplied snapshots.

        A track cannot be positioned by tick alone (delta-times and running
        status chain from the start of the stream), so `states` must come
        from a prior decode, see `capture_checkpoints`.
        """
        states = list(states)
        if len(states) != len(self.tracks):
            raise ValueError(f"expected {len(self.tracks)} track states, got {len(states)}")
        for track, st in zip(self.tracks, states):
            track.check_state(st)
        self.pause()
        with self._exclusive():
            self._file_tempo = float(tempo)
            self.tempo = self.overlay.effective(tempo)
            self.start_tick = int(tick)
            self.tick = int(tick)
            for track, st in zip(self.tracks, states):
                track.tempo = track.overlay.effective(tempo)
                track.restore(st)
        return self

    def restore(self, checkpoint: Checkpoint) -> "Player":
        return self.seek(checkpoint.tempo, checkpoint.tick, checkpoint.states)

    # --- Exploratory decoding ---
    def dry_run(self) -> "Player":
        """Decode every track without timing to collect events and total ticks.

        Tracks are left reset afterwards; running it twice gives the same result.
        """
        if self.state is PlayerState.PLAYING:
            raise AlreadyPlaying("cannot dry run while playing")
        with self._exclusive():
            self.reset_tracks()
            while not self.end_of_file():
                self._loop(dry_run=True)
            self.events = [list(track.events) for track in self.tracks]
            self.total_ticks = self.get_total_ticks()
            self.start_tick = 0
            self.start_time = None
            self.reset_tracks()
        self.bus.emit(EventKind.FILE_LOADED, self)
        return self

    def capture_checkpoints(self, ticks: Iterable[int]) -> List[Checkpoint]:
        """Decode forward from the start and record a Checkpoint at each tick."""
        if self.state is PlayerState.PLAYING:
            raise AlreadyPlaying("cannot capture checkpoints while playing")
        targets = sorted(set(int(t) for t in ticks))
        out: List[Checkpoint] = []
        with self._exclusive():
            saved = [(track.state, track.tempo) for track in self.tracks]
            self.reset_tracks()
            tempo, tempo_tick = DEFAULT_BPM, -1
            try:
                for target in targets:
                    for track in self.tracks:
                        while True:
                            nxt = track.peek_tick()
                            if nxt is None or nxt >= target:
                                break
                            event = track.decode()
                            if event.name == "Set Tempo" and event.tick >= tempo_tick:
                                tempo, tempo_tick = event.data, event.tick
                    out.append(Checkpoint(target, tempo, tuple(track.state for track in self.tracks)))
            finally:
                for track, (st, track_tempo) in zip(self.tracks, saved):
                    track.state = st
                    track.tempo = track_tempo
        return out

    def checkpoint_at(self, tick: int) -> Checkpoint:
        return self.capture_checkpoints([tick])[0]

    # --- Queries ---
    def get_events(self) -> List[List[MidiEvent]]:
        return self.events

    def initial_tempo(self) -> float:
        """Earliest Set Tempo found by the dry run, else the 120 BPM default."""
        tempos = [e for track in self.events for e in track if e.name == "Set Tempo"]
        if not tempos:
            return DEFAULT_BPM
        return min(tempos, key=lambda e: e.tick).data

    def get_total_ticks(self) -> int:
        return max((track.delta for track in self.tracks), default=0)

    def get_filesize(self) -> int:
        return len(self.buffer)

    filesize = get_filesize

    def bytes_processed(self) -> int:
        # Header chunk is assumed to be exactly 14 bytes
        return HEADER_SIZE + len(self.tracks) * CHUNK_HEADER_SIZE + sum(track.pointer for track in self.tracks)

    def end_of_file(self) -> bool:
        if self.bytes_processed() == len(self.buffer):
            return True
        return all(track.finished for track in self.tracks)

    def song_time(self) -> float:
        """Song duration in seconds at the current tempo."""
        if not self.division or not self.tempo:
            return 0.0
        return self.total_ticks / self.division / self.tempo * 60

    def song_time_remaining(self) -> int:
        if not self.division or not self.tempo:
            return 0
        return _round_half_up((self.total_ticks - self.tick) / self.division / self.tempo * 60)

    def song_percent_remaining(self) -> int:
        total = self.song_time()
        if total <= 0:
            return 0
        return _round_half_up(self.song_time_remaining() / total * 100)

    def get_metrics(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.metrics)
        out.update({"tick": self.tick, "tempo": self.tempo, "state": self.state.value})
        if self.clock is not None:
            out["clock"] = self.clock.get_metrics()
        return out


def seek_to_tick(player: Player, tick: int) -> Player:
    """Reposition `player` at `tick` by replaying the file up to it.

    Playback resumes if it was running.
    """
    was_playing = player.is_playing()
    if was_playing:
        player.pause()
    player.restore(player.checkpoint_at(tick))
    if was_playing:
        player.start()
    return player
