from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from typing import Optional

from smfplayer.events import EventKind
from smfplayer.midi_out import MidoSink, open_mido_output
from smfplayer.player import Player, seek_to_tick
from smfplayer.ws_server import start_ws_server


def run(
    path: str,
    port_filter: Optional[str],
    bpm: Optional[float] = None,
    seek_tick: int = 0,
    print_metrics: bool = False,
    ws: bool = False,
    ws_port: int = 8765,
    verbose: bool = False,
) -> int:
    player = Player()
    player.load_file(path)
    print(
        f"[player] loaded {path}: format={player.format} division={player.division} "
        f"tracks={len(player.tracks)} ticks={player.total_ticks} ~{player.song_time():.1f}s",
        flush=True,
    )
    out = open_mido_output(port_filter)
    sink = MidoSink(out).attach(player)

    done = threading.Event()
    player.on(EventKind.END_OF_FILE, lambda _: done.set())
    if verbose:
        player.on(EventKind.MIDI_EVENT, lambda e: print(f"[event] {e.as_dict()}", flush=True))

    if bpm is not None:
        # Forced tempo is an offset on top of whatever tempo the file sets
        player.set_original_tempo(player.initial_tempo())
        player.set_forced_tempo(bpm)
    if seek_tick > 0:
        seek_to_tick(player, seek_tick)

    def shutdown(*_):
        player.stop()
        sink.panic()
        print("[player] stopped", flush=True)
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    if ws:
        start_ws_server(player, port=ws_port)
    player.start()
    while not done.wait(1.0 if print_metrics else 0.25):
        if player.last_error is not None:
            print(f"[player] playback failed: {player.last_error}", file=sys.stderr, flush=True)
            sink.panic()
            return 1
        if print_metrics:
            m = player.get_metrics()
            clock = m.get("clock", {})
            print(
                f"[metrics] tick={m['tick']} events={m['events_emitted']} dropped={m['dropped_ticks']} "
                f"jitter_p95={clock.get('jitterMsP95', 0)}ms remaining={player.song_time_remaining()}s",
                flush=True,
            )
    # Give note offs on the final tick a moment to flush
    time.sleep(0.05)
    sink.panic()
    print(f"[player] end of file ({sink.sent} messages sent)", flush=True)
    return 0


def send_panic(port_filter: Optional[str]) -> MidoSink:
    """Silence a port: sustain off, All Sound Off and All Notes Off on every channel."""
    sink = MidoSink(open_mido_output(port_filter))
    sink.panic()
    print("[midi-out] panic sent (CC64/120/123)", flush=True)
    return sink


def main():
    ap = argparse.ArgumentParser(description="Play a Standard MIDI File to a MIDI output port")
    ap.add_argument("file", nargs="?", help="Path to a .mid file")
    ap.add_argument("--port", help="Substring to match MIDI port")
    ap.add_argument("--bpm", type=float, default=None, help="Force a tempo (BPM)")
    ap.add_argument("--seek-tick", type=int, default=0, help="Start playback at this tick")
    ap.add_argument("--metrics", action="store_true", help="Print runtime metrics once per second")
    ap.add_argument("--ws", action="store_true", help="Start a local WS server broadcasting events (ws://127.0.0.1:8765)")
    ap.add_argument("--ws-port", type=int, default=8765)
    ap.add_argument("-v", "--verbose", action="store_true", help="Print every decoded event")
    ap.add_argument("--panic", action="store_true", help="Only send All Notes Off to the port and exit")
    args = ap.parse_args()
    if args.panic:
        send_panic(args.port)
        sys.exit(0)
    if not args.file:
        ap.error("a .mid file is required unless --panic is given")
    sys.exit(
        run(
            args.file,
            args.port,
            bpm=args.bpm,
            seek_tick=args.seek_tick,
            print_metrics=bool(args.metrics),
            ws=bool(args.ws),
            ws_port=args.ws_port,
            verbose=bool(args.verbose),
        )
    )


if __name__ == "__main__":
    main()
