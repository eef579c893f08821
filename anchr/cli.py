"""
anchr command line.

Usage:
    anchr serve [--host HOST] [--port PORT]
    anchr subscribe -s http://hub.example.com:3000 -f http://localhost:8000/hook -e /github /stripe
    anchr test -s http://hub.example.com:3000
"""
import argparse
import asyncio
import signal
import sys
from typing import List, Sequence

from pydantic import ValidationError

from .client.filters import should_process
from .client.forwarder import EventForwarder
from .client.session import SessionConnectError, SubscriberSession, to_websocket_url
from .config import EventFilter, SubscriberConfig, get_settings
from .event_models import ConnectionStatus, ForwardResult, SessionState, WebhookEvent
from .formatting import format_event, format_forward_result
from .logging import get_logger, setup_logging

VERSION = "1.0.0"
PONG_TIMEOUT_SECONDS = 5.0


class SubscriberApp:
    """
    Runs ``anchr subscribe``: one session, the endpoint filter and a forwarder.
    """

    def __init__(
        self,
        config: SubscriberConfig,
        session: SubscriberSession | None = None,
        forwarder: EventForwarder | None = None,
    ):
        self.config = config
        self.session = session or SubscriberSession(config, logger=get_logger(component="session"))
        self.forwarder = forwarder or EventForwarder(
            config.forward_endpoints,
            timeout=config.timeout,
            concurrent=config.concurrent_forwarding,
            logger=get_logger(component="forwarder"),
        )
        self.session.set_event_callback(self.handle_event)
        self.session.set_status_callback(self.handle_status)
        self._running = False
        self._interrupted = False
        self._stop = asyncio.Event()

    async def handle_event(self, event: WebhookEvent) -> List[ForwardResult]:
        if not should_process(event, self.config.subscribe_endpoints, self.config.filters):
            return []

        print(f"\n» {format_event(event)}")
        if not self.forwarder.get_endpoints():
            return []

        results = await self.forwarder.forward_event(event)
        for result in results:
            print(format_forward_result(result))
        return results

    def handle_status(self, status: ConnectionStatus):
        if not self._running:
            return
        if status.state == SessionState.FAILED:
            print(f"\n✗ {status.error}. Restart anchr to try again.")
        elif status.state == SessionState.RECONNECTING:
            print(f"↻ Reconnection attempt {status.reconnect_attempts}/{self.config.max_retries}")
        elif not status.connected:
            if status.error:
                self._interrupted = True
                print(f"\n! Disconnected from server: {status.error}")
        elif self._interrupted:
            self._interrupted = False
            print("✓ Reconnected to server")

    def stop(self):
        """Shut a running subscriber down, as SIGINT and SIGTERM do."""
        self._stop.set()

    async def run(self) -> int:
        print("Starting anchr subscriber...")
        try:
            await self.session.connect()
        except SessionConnectError as e:
            print(f"✗ Failed to connect: {e}", file=sys.stderr)
            await self.forwarder.aclose()
            return 1

        self._running = True
        self._print_banner()

        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, self.stop)
        stopper = asyncio.create_task(self._stop.wait())
        closed = asyncio.create_task(self.session.wait_closed())
        try:
            await asyncio.wait({stopper, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            closed.cancel()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self._running = False
            print("\nShutting down...")
            await self.session.disconnect()
            await self.forwarder.aclose()

        if self.session.status.state == SessionState.FAILED:
            return 1
        print("Goodbye!")
        return 0

    def _print_banner(self):
        print(f"✓ Connected to {self.session.url}")
        if self.config.subscribe_endpoints:
            print(f"Listening for webhook events on: {', '.join(self.config.subscribe_endpoints)}")
        else:
            print("Listening for all webhook events...")
        if self.config.forward_endpoints:
            print(f"Forwarding to: {', '.join(self.config.forward_endpoints)}")
        else:
            print("No forwarding endpoints configured. Use --forward-to to specify endpoints.")
        print("Press Ctrl+C to stop\n")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback) -> list:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:
            # Windows event loops; Ctrl+C then surfaces as KeyboardInterrupt
            continue
        installed.append(sig)
    return installed


async def check_connection(server_url: str) -> int:
    """Connect, exchange one ping/pong, disconnect."""
    session = SubscriberSession(
        SubscriberConfig(server_url=server_url, max_retries=0),
        logger=get_logger(component="session"),
    )
    print("Testing connection...")
    try:
        await session.connect()
    except SessionConnectError as e:
        print(f"✗ Connection failed: {e}", file=sys.stderr)
        return 1

    print(f"✓ Connected to {session.url}")
    try:
        if await session.ping() and await session.wait_for_pong(PONG_TIMEOUT_SECONDS):
            print(f"✓ Server is responsive (pong at {session.last_pong})")
            return 0
        print("✗ No pong received", file=sys.stderr)
        return 1
    finally:
        await session.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anchr",
        description="Relay webhooks from a public hub to local endpoints",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the webhook hub server")
    serve.add_argument("--host", help="Bind address (default: HOST setting)")
    serve.add_argument("--port", type=int, help="Listen port (default: PORT setting)")

    subscribe = commands.add_parser(
        "subscribe",
        help="Subscribe to webhook events and forward them to local endpoints",
    )
    subscribe.add_argument("-s", "--server", required=True, help="Hub URL, e.g. http://localhost:3000")
    subscribe.add_argument(
        "-f", "--forward-to", nargs="+", default=[], metavar="URL",
        help="Local endpoints to forward events to",
    )
    subscribe.add_argument(
        "-e", "--endpoints", nargs="+", default=[], metavar="PREFIX",
        help="Webhook endpoint prefixes to subscribe to, e.g. /github /stripe",
    )
    subscribe.add_argument("-t", "--timeout", type=int, default=5000, help="Forward timeout in ms")
    subscribe.add_argument("-r", "--retries", type=int, default=5, help="Max reconnection attempts")
    subscribe.add_argument("-i", "--interval", type=int, default=1000, help="Reconnection interval in ms")
    subscribe.add_argument("--source", help="Only act on events from this exact source")
    subscribe.add_argument("--method", help="Only act on events with this HTTP method")
    subscribe.add_argument(
        "--parallel", action="store_true",
        help="Forward to all endpoints at once instead of one after another",
    )
    subscribe.add_argument("-v", "--verbose", action="count", default=0, help="More log output")

    test = commands.add_parser("test", help="Test the connection to a hub")
    test.add_argument("-s", "--server", required=True, help="Hub URL")
    test.add_argument("-v", "--verbose", action="count", default=0, help="More log output")

    return parser


def config_from_args(args: argparse.Namespace) -> SubscriberConfig:
    filters = []
    if args.source or args.method:
        filters.append(EventFilter(source=args.source, method=args.method))
    return SubscriberConfig(
        server_url=args.server,
        forward_endpoints=args.forward_to,
        subscribe_endpoints=args.endpoints,
        filters=filters,
        timeout=args.timeout,
        max_retries=args.retries,
        reconnect_interval=args.interval,
        concurrent_forwarding=args.parallel,
    )


def _cli_log_level(verbosity: int) -> str:
    return {0: "warning", 1: "info"}.get(verbosity, "debug")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        from .server import run

        settings = get_settings()
        setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)
        run(host=args.host, port=args.port)
        return 0

    setup_logging(json_output=False, level=_cli_log_level(args.verbose), service_name="anchr-cli")

    if args.command == "test":
        try:
            to_websocket_url(args.server)
        except ValueError as e:
            parser.error(str(e))
        return asyncio.run(check_connection(args.server))

    try:
        config = config_from_args(args)
        app = SubscriberApp(config)
    except (ValidationError, ValueError) as e:
        parser.error(str(e))
    return asyncio.run(app.run())


if __name__ == "__main__":
    sys.exit(main())
