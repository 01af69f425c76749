from __future__ import annotations

import argparse
import asyncio
import json


async def run(url: str, cmd: str, args: argparse.Namespace):
    import websockets  # type: ignore

    async with websockets.connect(url) as ws:
        # hello + initial state
        for _ in range(2):
            print(await ws.recv())
        if cmd == "tempo":
            await ws.send(json.dumps({"type": "setTempo", "bpm": float(args.bpm)}))
        elif cmd == "seek":
            await ws.send(json.dumps({"type": "seek", "tick": int(args.tick)}))
        elif cmd in ("play", "pause", "stop"):
            await ws.send(json.dumps({"type": cmd}))
        # "tail" sends nothing and just prints the feed
        count = 0
        while args.count <= 0 or count < args.count:
            try:
                msg = await asyncio.wait_for(ws.recv(), timeout=args.timeout)
            except asyncio.TimeoutError:
                break
            print(msg)
            count += 1


def main():
    ap = argparse.ArgumentParser(description="Simple WS controller for a running smfplayer")
    ap.add_argument("--url", default="ws://127.0.0.1:8765")
    ap.add_argument("--count", type=int, default=3, help="Messages to print after the command (0 = until idle)")
    ap.add_argument("--timeout", type=float, default=2.0)
    sub = ap.add_subparsers(dest="cmd", required=True)
    p_tempo = sub.add_parser("tempo"); p_tempo.add_argument("--bpm", required=True)
    p_seek = sub.add_parser("seek"); p_seek.add_argument("--tick", required=True)
    sub.add_parser("play"); sub.add_parser("pause"); sub.add_parser("stop"); sub.add_parser("tail")
    args = ap.parse_args()
    asyncio.run(run(args.url, args.cmd, args))


if __name__ == "__main__":
    main()
