"""Command line stand-in for the browser call UI.

Joins the signaling server under a display name, prints the peer list and
call state changes, and optionally places or auto-accepts a call.

Examples
--------
Wait for calls as Bob and accept them automatically::

    python scripts/demo_call.py --name Bob --auto-accept

Call Bob from Alice with synthetic audio/video tracks::

    python scripts/demo_call.py --name Alice --call Bob --media synthetic

Capture from a V4L2 camera instead::

    python scripts/demo_call.py --name Alice --call Bob \
        --media /dev/video0 --media-format v4l2

Press Ctrl+C to hang up and leave.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Iterable

from aiortc.contrib.media import MediaBlackhole

from peerlink.calls import CallSnapshot, CallState
from peerlink.client import SignalingClient, wait_for_peer
from peerlink.rtc.media import media_provider_for
from peerlink.utils.logging import configure_logging
from peerlink.utils.profiles import ProfileError, load_config

LOG = logging.getLogger("peerlink.demo")


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PeerLink demo call client")
    parser.add_argument("--server", default="ws://127.0.0.1:3001/signaling", help="signaling WebSocket URL")
    parser.add_argument("--name", required=True, help="display name to join with")
    parser.add_argument("--profile", default="default", help="signaling profile to load")
    parser.add_argument("--call", default=None, help="name or id of the peer to call once it joins")
    parser.add_argument("--auto-accept", action="store_true", help="accept incoming calls automatically")
    parser.add_argument(
        "--media",
        default="synthetic",
        help="'none' (receive only), 'synthetic', or a device/file path opened with FFmpeg.",
    )
    parser.add_argument("--media-format", default=None, help="FFmpeg input format, e.g. v4l2 or avfoundation")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Optional call duration in seconds; 0 means run until interrupted.",
    )
    parser.add_argument("--log-level", default="info", help="logging level")
    return parser.parse_args(argv)


async def run_client(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.profile)
    except ProfileError as exc:
        LOG.error("%s", exc)
        return 2

    blackhole = MediaBlackhole()

    def _on_remote_track(track) -> None:
        blackhole.addTrack(track)
        client.spawn(blackhole.start())

    client = SignalingClient(
        args.server,
        args.name,
        config=config,
        media_provider=media_provider_for(args.media, format=args.media_format),
        on_users=lambda peers: print("online:", ", ".join(p["name"] for p in peers) or "(nobody else)"),
        on_remote_track=_on_remote_track,
    )

    answered: list = [None]

    def _on_call(snapshot: CallSnapshot) -> None:
        print(f"call: {snapshot.state.value} {snapshot.peer_name or snapshot.peer_id or ''} {snapshot.status}".rstrip())
        session = client.machine.session
        if args.auto_accept and snapshot.state is CallState.RINGING and session is not answered[0]:
            answered[0] = session
            client.spawn(client.machine.accept())

    client.machine.subscribe(_on_call)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    runner = asyncio.create_task(client.run())
    try:
        await asyncio.wait_for(client.joined.wait(), timeout=10.0)
        if args.call:
            peer = await wait_for_peer(client, args.call)
            await client.machine.initiate(peer["id"], peer["name"])

        stopper = asyncio.create_task(stop.wait())
        waiters = {runner, stopper}
        if args.duration > 0:
            waiters.add(asyncio.create_task(asyncio.sleep(args.duration)))
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    except (asyncio.TimeoutError, TimeoutError) as exc:
        LOG.error("Giving up: %s", exc or "server did not confirm join")
    finally:
        await client.close()
        await blackhole.stop()
        if not runner.done():
            runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner

    return 0


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run_client(args))


if __name__ == "__main__":
    sys.exit(main())
