"""Command line entry point for decoding and joining Wi-Fi QR payloads."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Iterator, Sequence, TextIO

from .config import EngineSettings, load_settings
from .connection_log import AttemptEvent, ConnectionLog
from .credentials import Credential, parse_wifi_payload
from .engine import AssociationEngine, AssociationError, AttemptOutcome
from .permissions import (
    AlwaysAuthorizedGate,
    NMCLIPermissionGate,
    PermissionGate,
    PermissionPrompt,
    fixed_prompt,
)
from .scanner import PayloadScanner
from .wifi import NMCLIBackend, WiFiBackend

LOGGER = logging.getLogger("qr_wifi.cli")

EXIT_CONNECTED = 0
EXIT_FAILED = 1
EXIT_DEFERRED = 2

_TERMINAL_EVENTS = frozenset({"succeeded", "failed", "cancelled"})


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")


def ask_prompt(stream_in: TextIO | None = None, stream_out: TextIO | None = None) -> PermissionPrompt:
    """Return a prompt asking on the terminal whether to open settings."""

    async def _prompt(credential: Credential) -> bool:
        def _ask() -> bool:
            reader = stream_in or sys.stdin
            writer = stream_out or sys.stderr
            writer.write(
                f"Permission to control Wi-Fi is required to join {credential.ssid}.\n"
                "Open the system settings to grant it? [y/N] "
            )
            writer.flush()
            answer = reader.readline()
            return answer.strip().lower() in {"y", "yes"}

        return await asyncio.to_thread(_ask)

    return _prompt


def _build_prompt(choice: str) -> PermissionPrompt:
    if choice == "ask":
        return ask_prompt()
    return fixed_prompt(choice == "open")


def _build_gate(args: argparse.Namespace) -> PermissionGate:
    if args.no_permission_check:
        return AlwaysAuthorizedGate()
    return NMCLIPermissionGate()


def _build_engine(
    args: argparse.Namespace,
    settings: EngineSettings,
    *,
    backend: WiFiBackend | None = None,
    gate: PermissionGate | None = None,
) -> AssociationEngine:
    interface = args.interface or settings.interface
    return AssociationEngine(
        backend or NMCLIBackend(interface=interface),
        gate or _build_gate(args),
        settings=settings,
        prompt=_build_prompt(args.prompt),
        connection_log=ConnectionLog(settings.log_path),
    )


def _print_event(event: AttemptEvent) -> None:
    print(f"[{event.event}] {event.message}", file=sys.stderr)


async def _wait_for_resume(engine: AssociationEngine, timeout: float) -> int:
    loop = asyncio.get_running_loop()
    finished = asyncio.Event()
    result: dict[str, str] = {}

    def _listener(event: AttemptEvent) -> None:
        if event.event in _TERMINAL_EVENTS:
            result["event"] = event.event
            loop.call_soon_threadsafe(finished.set)

    remove = engine.add_listener(_listener)
    try:
        await asyncio.wait_for(finished.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        LOGGER.warning("Permission was not granted within %.0fs", timeout)
        return EXIT_DEFERRED
    finally:
        remove()
    return EXIT_CONNECTED if result.get("event") == "succeeded" else EXIT_FAILED


async def _connect(
    engine: AssociationEngine,
    credential: Credential,
    *,
    wait: float | None = None,
) -> int:
    gate = engine.permission_gate
    try:
        try:
            outcome: AttemptOutcome = await engine.connect(credential)
        except AssociationError as exc:
            print(f"Unable to join {credential.ssid}: {exc}", file=sys.stderr)
            return EXIT_FAILED
        if outcome.connected:
            print(f"Connected to {credential.ssid}")
            return EXIT_CONNECTED
        print(f"Waiting for Wi-Fi permission before joining {credential.ssid}", file=sys.stderr)
        if not wait:
            return EXIT_DEFERRED
        if isinstance(gate, NMCLIPermissionGate):
            gate.start_watching()
        return await _wait_for_resume(engine, wait)
    finally:
        await engine.aclose()
        gate.close()


def _command_parse(args: argparse.Namespace) -> int:
    credential = parse_wifi_payload(args.payload)
    if credential is None:
        print("Not a Wi-Fi QR payload", file=sys.stderr)
        return EXIT_FAILED
    if args.json:
        print(json.dumps(credential.to_dict(include_secret=args.show_secret), indent=2))
    else:
        print(credential.describe())
    return EXIT_CONNECTED


def _command_connect(args: argparse.Namespace, settings: EngineSettings) -> int:
    credential = parse_wifi_payload(args.payload)
    if credential is None:
        print("Not a Wi-Fi QR payload", file=sys.stderr)
        return EXIT_FAILED
    engine = _build_engine(args, settings)
    engine.add_listener(_print_event)
    return asyncio.run(_connect(engine, credential, wait=args.wait))


def _stdin_deliveries(stream: TextIO) -> Iterator[str | None]:
    for line in stream:
        text = line.rstrip("\r\n")
        yield text or None


def _command_watch(args: argparse.Namespace, settings: EngineSettings) -> int:
    scanner = PayloadScanner(stop_on_first=not args.keep_going)
    engine = _build_engine(args, settings)
    engine.add_listener(_print_event)
    # Latest result per SSID, so a resumed attempt replaces its deferral.
    results: dict[str, int] = {}
    codes = {"succeeded": EXIT_CONNECTED, "failed": EXIT_FAILED, "deferred": EXIT_DEFERRED}

    def _track(event: AttemptEvent) -> None:
        if event.ssid is not None and event.event in codes:
            results[event.ssid] = codes[event.event]

    engine.add_listener(_track)
    gate = engine.permission_gate

    async def _run() -> int:
        async def _handle(credential: Credential) -> None:
            try:
                await engine.connect(credential)
            except AssociationError as exc:
                print(f"Unable to join {credential.ssid}: {exc}", file=sys.stderr)

        if args.prompt != "decline" and isinstance(gate, NMCLIPermissionGate):
            gate.start_watching()
        try:
            found = await scanner.watch(_stdin_deliveries(sys.stdin), _handle)
        finally:
            await engine.aclose()
            gate.close()
        LOGGER.debug("Scan statistics: %s", scanner.stats.to_dict())
        if not found:
            print("No Wi-Fi QR payload received", file=sys.stderr)
            return EXIT_FAILED
        return max(results.values()) if results else EXIT_FAILED

    return asyncio.run(_run())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qr-wifi", description="Join Wi-Fi networks from QR payloads")
    parser.add_argument("--config", type=Path, default=None, help="Engine configuration JSON path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Decode a payload without connecting")
    parse_cmd.add_argument("payload", help="Text decoded from the QR code")
    parse_cmd.add_argument("--json", action="store_true", help="Print the credential as JSON")
    parse_cmd.add_argument("--show-secret", action="store_true", help="Include the password in JSON output")

    for name, help_text in (
        ("connect", "Join the network described by a payload"),
        ("watch", "Read payloads from stdin (one per line) and join the first valid one"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        if name == "connect":
            command.add_argument("payload", help="Text decoded from the QR code")
            command.add_argument(
                "--wait",
                type=float,
                default=None,
                metavar="SECONDS",
                help="After deferring, wait this long for permission and reconnect",
            )
        else:
            command.add_argument("--keep-going", action="store_true", help="Keep joining every valid payload")
        command.add_argument("--interface", default=None, help="Wi-Fi interface override (e.g. wlan0)")
        command.add_argument(
            "--no-permission-check",
            action="store_true",
            help="Assume the process may already control networking",
        )
        command.add_argument(
            "--prompt",
            choices=("ask", "open", "decline"),
            default="ask" if name == "connect" else "decline",
            help="What to do when permission is missing",
        )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command == "parse":
        return _command_parse(args)

    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_FAILED

    if args.command == "connect":
        return _command_connect(args, settings)
    return _command_watch(args, settings)


if __name__ == "__main__":
    sys.exit(main())
