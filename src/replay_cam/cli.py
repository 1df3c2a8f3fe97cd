"""Command line entry points for the camera service and a terminal remote."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from .config import TRANSPORT_KINDS, ConfigManager, TransportSettings
from .events import PeerChanged, StateChanged, StatusReceived
from .protocol import Role
from .session import Session, SessionError
from .transport import TransportError, create_transport
from .version import APP_VERSION


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ReplayCam CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m replay_cam.cli",
        description=f"ReplayCam {APP_VERSION}",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    camera = sub.add_parser("camera", help="Serve the camera HTTP API and accept remotes.")
    camera.add_argument("--config", type=Path, default=Path("data/config.json"))
    camera.add_argument("--host", default=None, help="Interface to bind (defaults to config).")
    camera.add_argument("--port", type=int, default=None, help="HTTP port (defaults to config).")

    remote = sub.add_parser("remote", help="Pair as a remote and send captures from the terminal.")
    remote.add_argument("--transport", choices=sorted(TRANSPORT_KINDS), default="stream")
    remote.add_argument("--target", required=True, help="Pairing address or session code.")
    remote.add_argument("--duration", type=int, default=None, help="Requested clip length in seconds.")
    remote.add_argument("--relay-url", default=None, help="Relay store base URL.")
    return parser


def cmd_camera(args: argparse.Namespace) -> int:
    from .app import create_app

    config_manager = ConfigManager(args.config)
    settings = config_manager.get_transport_settings()
    overrides: dict[str, object] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if overrides:
        settings = config_manager.set_transport_settings({**settings.to_dict(), **overrides})
    app = create_app(args.config)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
    return 0


async def _remote_loop(args: argparse.Namespace) -> int:
    settings = TransportSettings(kind=args.transport, relay_url=args.relay_url)
    session = Session(create_transport(settings), Role.REMOTE)
    session.events.subscribe(StatusReceived, lambda event: print(f"camera: {event.text}"))
    session.events.subscribe(PeerChanged, lambda event: print(
        f"camera {'connected' if event.connected else 'lost'}"
        + (f" ({event.reason})" if event.reason else "")
    ))
    session.events.subscribe(StateChanged, lambda event: logging.getLogger(__name__).debug(
        "state %s -> %s", event.previous.value, event.current.value
    ))
    try:
        await session.start(args.target)
    except (SessionError, TransportError, ValueError) as exc:
        print(f"Unable to pair with {args.target}: {exc}", file=sys.stderr)
        await session.aclose()
        return 1
    print("Paired. Press Enter to capture, q then Enter to quit.")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line or line.strip().lower() in {"q", "quit", "exit"}:
                break
            try:
                await session.send_capture(args.duration)
            except (SessionError, TransportError) as exc:
                print(f"Capture not sent: {exc}", file=sys.stderr)
            else:
                print("Capture sent.")
    finally:
        await session.aclose()
    return 0


def cmd_remote(args: argparse.Namespace) -> int:
    return asyncio.run(_remote_loop(args))


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "camera":
        return cmd_camera(args)
    return cmd_remote(args)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m replay_cam.cli`."""

    return run(argv)


__all__ = ["build_parser", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
