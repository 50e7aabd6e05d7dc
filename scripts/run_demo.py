from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from typing import Any

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voxassist.config import PipelineConfig
from voxassist.demo_simulator import TEMPLATES
from voxassist.log import configure_logging
from voxassist.orchestrator import build_orchestrator
from voxassist.transport_ws import Connection, Transport


class PrintingTransport(Transport):
    def __init__(self, *, show_audio: bool) -> None:
        self._show_audio = show_audio
        self._closed = asyncio.Event()
        self.frames = 0

    async def recv_text(self) -> str:
        await self._closed.wait()
        raise ConnectionError("closed")

    async def send_text(self, text: str) -> None:
        self.frames += 1
        obj: dict[str, Any] = json.loads(text)
        if not self._show_audio and "audioData" in obj:
            obj["audioData"] = f"<{len(obj['audioData'])} b64 chars>"
        print(json.dumps(obj, sort_keys=True, separators=(",", ":")))

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        self._closed.set()


async def _run_demo(args: argparse.Namespace) -> int:
    cfg = replace(
        PipelineConfig.from_env(),
        demo_seed=args.seed,
        demo_initial_delay_ms=int(500 * args.speed),
        demo_agent_delay_min_ms=int(800 * args.speed),
        demo_agent_delay_max_ms=int(1600 * args.speed),
        demo_participant_delay_min_ms=int(1800 * args.speed),
        demo_participant_delay_max_ms=int(3200 * args.speed),
    )
    orch = build_orchestrator(cfg)
    transport = PrintingTransport(show_audio=args.show_audio)
    connection = Connection(transport, clock=orch.clock, metrics=orch.metrics)
    try:
        run = orch.start_demo(args.template, call_id=args.call_id or None)
        orch.join(run.call_id, connection)
        while not run.finished and not run.cancelled:
            await asyncio.sleep(0.05)
        await connection.flush()
        if args.end:
            orch.end_call(run.call_id, "demo_finished")
            await connection.flush()
    finally:
        await orch.aclose()
    print(json.dumps({"frames": transport.frames, "sentiment": run.overall.value}, sort_keys=True), file=sys.stderr)
    return 0


async def _run_conversation(args: argparse.Namespace) -> int:
    cfg = replace(PipelineConfig.from_env(), audio_chunk_pacing_ms=0)
    orch = build_orchestrator(cfg)
    transport = PrintingTransport(show_audio=args.show_audio)
    connection = Connection(transport, clock=orch.clock, metrics=orch.metrics)
    call_id = args.call_id or "local-call"
    try:
        orch.start_call(call_id)
        orch.join(call_id, connection)
        for text in args.say:
            result = await orch.handle_participant_text(call_id, text)
            await connection.flush()
            print(json.dumps(result.to_dict(), sort_keys=True), file=sys.stderr)
        orch.end_call(call_id, "local_run_finished")
        await connection.flush()
    finally:
        await orch.aclose()
    return 0


def main() -> None:
    ap = argparse.ArgumentParser(description="Run a scripted demo call or a local conversation and print observer frames.")
    ap.add_argument("--template", type=str, default="CUSTOMER_SUPPORT", choices=sorted(TEMPLATES.keys()))
    ap.add_argument("--call-id", type=str, default="")
    ap.add_argument("--seed", type=int, default=7, help="seed for demo delays (0 -> unseeded)")
    ap.add_argument("--speed", type=float, default=0.1, help="scale factor for demo delays")
    ap.add_argument("--show-audio", action="store_true", help="print full base64 audio payloads")
    ap.add_argument("--end", action="store_true", help="end the demo call when the script finishes")
    ap.add_argument("--say", action="append", default=[], help="participant utterance (repeatable); skips the demo")
    ap.add_argument("--log-level", type=str, default="WARNING")
    args = ap.parse_args()

    configure_logging(args.log_level)
    runner = _run_conversation if args.say else _run_demo
    raise SystemExit(asyncio.run(runner(args)))


if __name__ == "__main__":
    main()
