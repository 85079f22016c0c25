"""tagrelay command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, List, Optional

import requests
import uvicorn
from requests import RequestException
from rich.console import Console
from rich.table import Table

from tagrelay import protocol
from tagrelay.client import RelaySession
from tagrelay.config import DEFAULT_PORT, BroadcastMode, ServerConfig
from tagrelay.liveness import LivenessMonitor
from tagrelay.metrics import MetricsLogger
from tagrelay.reader import TagReader

console = Console()


def _cmd_serve(args: argparse.Namespace) -> int:
	overrides = {
		"PORT": args.port,
		"TAGRELAY_HOST": args.host,
		"TAGRELAY_BROADCAST_MODE": args.broadcast_mode,
		"TAGRELAY_METRICS_LOG": args.metrics_log,
	}
	for name, value in overrides.items():
		if value is not None:
			os.environ[name] = str(value)
	config = ServerConfig.from_env()
	console.print(f"Server is running on port {config.port} ({config.broadcast_mode.value} broadcast)")
	if config.project_domain:
		console.print(f"Live URL: https://{config.project_domain}.glitch.me")
	uvicorn.run(
		"tagrelay.api:app",
		host=config.host,
		port=config.port,
		reload=args.reload,
		ws_ping_interval=config.ping_interval,
		ws_ping_timeout=config.ping_timeout,
	)
	return 0


async def _cmd_send(args: argparse.Namespace) -> int:
	session = RelaySession(args.url, reconnection=False, open_timeout=args.timeout)
	if not await session.connect():
		console.print(f"[red]{session.status.connection_status}[/red]")
		return 1
	rows: List[Dict[str, Any]] = []
	try:
		with TagReader(session) as reader:
			for text in args.text:
				if not await reader.submit_text(text):
					console.print(f"[red]{reader.status}[/red]")
					return 1
				ack = await reader.wait_for_ack(args.timeout)
				rows.append({"tagData": text, **(ack or {"received": False})})
	finally:
		await session.disconnect()

	if args.json:
		json.dump(rows, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Acknowledgments")
	for column in ("tagData", "received", "messageId", "timestamp"):
		table.add_column(column)
	for row in rows:
		table.add_row(*(str(row.get(column, "")) for column in ("tagData", "received", "messageId", "timestamp")))
	console.print(table)
	return 0 if all(row.get("received") for row in rows) else 1


async def _cmd_listen(args: argparse.Namespace) -> int:
	metrics = MetricsLogger(args.metrics_log) if args.metrics_log else None
	session = RelaySession(args.url)
	stop_event = asyncio.Event()

	def _print_event(data: Any) -> None:
		if args.json:
			sys.stdout.write(json.dumps(data) + "\n")
			sys.stdout.flush()
			return
		body = data if isinstance(data, dict) else {"tagData": data}
		console.print(
			f"[bold]{body.get('timestamp', '')}[/bold] "
			f"{body.get('sourceClientId', '?')}: {body.get('tagData')!r}"
		)

	def _print_status(*_: Any) -> None:
		console.print(f"[dim]{session.status.connection_status}[/dim]")

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, stop_event.set)

	handlers = {
		protocol.NFC_DATA_RECEIVED: _print_event,
		protocol.CONNECT: _print_status,
		protocol.DISCONNECT: _print_status,
		protocol.CONNECT_ERROR: _print_status,
		protocol.RECONNECT_ATTEMPT: _print_status,
	}
	with session.subscriptions(handlers):
		async with LivenessMonitor(session, interval=args.probe_interval, metrics=metrics):
			await session.connect()
			with contextlib.suppress(asyncio.TimeoutError):
				await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
		await session.disconnect()
	return 0


async def _cmd_ping(args: argparse.Namespace) -> int:
	session = RelaySession(args.url, reconnection=False, open_timeout=args.timeout)
	if not await session.connect():
		console.print(f"[red]{session.status.connection_status}[/red]")
		return 1
	monitor = LivenessMonitor(session, probe_timeout=args.timeout)
	failures = 0
	try:
		for index in range(args.count):
			if index:
				await asyncio.sleep(args.interval)
			sample = await monitor.probe()
			if sample is None:
				failures += 1
				console.print(f"[red]probe failed: {monitor.last_error}[/red]")
			else:
				console.print(f"Latency: {sample.round_trip_ms:.1f} ms")
	finally:
		await session.disconnect()
	return 1 if failures else 0


def _cmd_health(args: argparse.Namespace) -> int:
	url = args.url.rstrip("/") + "/health"
	try:
		response = requests.get(url, timeout=args.timeout)
		response.raise_for_status()
		payload = response.json()
	except (RequestException, ValueError) as exc:
		console.print(f"[red]health check failed: {exc}[/red]")
		return 1
	json.dump(payload, sys.stdout, indent=2)
	sys.stdout.write("\n")
	return 0 if payload.get("status") == "healthy" else 1


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="NFC tag relay server and clients")
	parser.add_argument("--log-level", default="WARNING", help="Python logging level")
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Run the relay server")
	serve.add_argument("--host", help="Interface to bind (default 0.0.0.0)")
	serve.add_argument("--port", type=int, help=f"Port to listen on (default {DEFAULT_PORT})")
	serve.add_argument(
		"--broadcast-mode",
		choices=[mode.value for mode in BroadcastMode],
		help="Relay to every client or to everyone but the sender",
	)
	serve.add_argument("--metrics-log", help="Path to a CSV audit log")
	serve.add_argument("--reload", action="store_true", help="Reload on code changes")
	serve.set_defaults(handler=_cmd_serve)

	send = sub.add_parser("send", help="Submit tag text and wait for acknowledgments")
	send.add_argument("url", help="Relay base URL, e.g. http://127.0.0.1:3000")
	send.add_argument("text", nargs="+", help="Tag text to submit")
	send.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait per acknowledgment")
	send.add_argument("--json", action="store_true", help="Output JSON")
	send.set_defaults(handler=_cmd_send)

	listen = sub.add_parser("listen", help="Print relayed tag events")
	listen.add_argument("url", help="Relay base URL")
	listen.add_argument("--runtime", type=float, help="Stop after this many seconds")
	listen.add_argument("--probe-interval", type=float, default=10.0, help="Latency probe interval seconds")
	listen.add_argument("--metrics-log", help="Path to a CSV log of latency samples")
	listen.add_argument("--json", action="store_true", help="Output JSON lines")
	listen.set_defaults(handler=_cmd_listen)

	ping = sub.add_parser("ping", help="Measure round-trip latency")
	ping.add_argument("url", help="Relay base URL")
	ping.add_argument("--count", type=int, default=3, help="Number of probes")
	ping.add_argument("--interval", type=float, default=1.0, help="Seconds between probes")
	ping.add_argument("--timeout", type=float, default=5.0, help="Probe timeout seconds")
	ping.set_defaults(handler=_cmd_ping)

	health = sub.add_parser("health", help="Query the HTTP health endpoint")
	health.add_argument("url", help="Relay base URL")
	health.add_argument("--timeout", type=float, default=5.0, help="Request timeout seconds")
	health.set_defaults(handler=_cmd_health)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
		format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
	)
	try:
		outcome = args.handler(args)
		if asyncio.iscoroutine(outcome):
			return asyncio.run(outcome)
		return outcome
	except ValueError as exc:
		parser.error(str(exc))
	return 2


if __name__ == "__main__":
	sys.exit(main())
