from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any, Dict, Optional, Set

from smfplayer.events import EventKind
from smfplayer.player import Player, seek_to_tick


def get_state(player: Player) -> Dict[str, Any]:
    return {
        "transport": player.state.value,
        "tick": player.tick,
        "bpm": player.tempo,
        "totalTicks": player.total_ticks,
        "songTime": round(player.song_time(), 3),
        "songTimeRemaining": player.song_time_remaining(),
        "bytesProcessed": player.bytes_processed(),
        "metrics": player.get_metrics(),
    }


def get_summary(player: Player) -> Dict[str, Any]:
    return {
        "format": player.format,
        "division": player.division,
        "tracks": len(player.tracks),
        "filesize": player.get_filesize(),
        "totalTicks": player.total_ticks,
        "songTime": round(player.song_time(), 3),
    }


def _msg(kind: str, payload: Any = None, req_id: Any = None) -> str:
    obj: Dict[str, Any] = {"type": kind, "ts": time.time()}
    if req_id is not None:
        obj["id"] = req_id
    if payload is not None:
        obj["payload"] = payload
    return json.dumps(obj)


def _apply_command(player: Player, obj: Dict[str, Any]) -> Dict[str, Any]:
    t = obj.get("type")
    if t == "play":
        player.start()
    elif t == "pause":
        player.pause()
    elif t == "stop":
        player.stop()
    elif t == "seek":
        seek_to_tick(player, int(obj.get("tick", 0)))
    elif t == "setTempo":
        bpm = obj.get("bpm")
        player.set_forced_tempo(None if bpm is None else float(bpm))
    else:
        return {"ok": False, "error": "unknown_command", "command": t}
    return {"ok": True}


async def serve_ws(player: Player, host: str, port: int, state_interval: float = 0.5):
    """Serve player notifications and transport commands over websockets.

    Decoded events and end-of-file are pushed as they happen; playback state
    is broadcast every `state_interval` seconds.
    """
    import websockets  # type: ignore

    clients: Set[Any] = set()
    loop = asyncio.get_running_loop()
    outbox: "asyncio.Queue[str]" = asyncio.Queue()

    def enqueue(msg: str) -> None:
        # Player listeners may run on the clock thread
        loop.call_soon_threadsafe(outbox.put_nowait, msg)

    def on_midi(event):
        enqueue(_msg("midiEvent", event.as_dict()))

    def on_eof(_):
        enqueue(_msg("endOfFile"))

    def on_loaded(p):
        enqueue(_msg("fileLoaded", get_summary(p)))

    async def broadcast(msg: str):
        if not clients:
            return
        await asyncio.gather(*[c.send(msg) for c in list(clients)], return_exceptions=True)

    async def pump():
        while True:
            msg = await outbox.get()
            await broadcast(msg)

    async def state_task():
        while True:
            await asyncio.sleep(state_interval)
            await broadcast(_msg("state", get_state(player)))

    async def handler(ws, *maybe_path):
        print(f"[ws] client connected: {getattr(ws, 'remote_address', None)}", flush=True)
        clients.add(ws)
        await ws.send(_msg("hello", {"protocol": 1, "file": get_summary(player)}))
        await ws.send(_msg("state", get_state(player)))
        try:
            async for message in ws:
                try:
                    obj = json.loads(message)
                except ValueError:
                    await ws.send(_msg("error", {"ok": False, "error": "bad_json"}))
                    continue
                req_id = obj.get("id")
                if obj.get("type") == "getState":
                    await ws.send(_msg("state", get_state(player), req_id))
                    continue
                if obj.get("type") == "ping":
                    await ws.send(_msg("pong", None, req_id))
                    continue
                try:
                    res = _apply_command(player, obj)
                except Exception as e:
                    print(f"[ws] command {obj.get('type')} failed: {e}", flush=True)
                    res = {"ok": False, "error": type(e).__name__, "details": str(e)}
                await ws.send(_msg("ack" if res.get("ok") else "error", res, req_id))
                await ws.send(_msg("state", get_state(player)))
        finally:
            clients.discard(ws)

    player.on(EventKind.MIDI_EVENT, on_midi)
    player.on(EventKind.END_OF_FILE, on_eof)
    player.on(EventKind.FILE_LOADED, on_loaded)
    tasks = []
    try:
        async with websockets.serve(handler, host, port):
            print(f"[ws] player listening on ws://{host}:{port}", flush=True)
            tasks = [asyncio.create_task(pump()), asyncio.create_task(state_task())]
            await asyncio.Future()
    finally:
        for t in tasks:
            t.cancel()
        player.bus.off(EventKind.MIDI_EVENT, on_midi)
        player.bus.off(EventKind.END_OF_FILE, on_eof)
        player.bus.off(EventKind.FILE_LOADED, on_loaded)


def start_ws_server(player: Player, host: str = "127.0.0.1", port: int = 8765) -> Optional[threading.Thread]:
    """Run `serve_ws` on a daemon thread with its own event loop."""

    def _runner():
        asyncio.run(serve_ws(player, host, port))

    th = threading.Thread(target=_runner, name="smfplayer-ws", daemon=True)
    th.start()
    return th
