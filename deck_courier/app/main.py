import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from deck_courier.core.api import APIController, APIServer
from deck_courier.core.config_manager import get_config_manager
from deck_courier.core.device.client import ProtocolClient
from deck_courier.core.errors import DeckCourierError
from deck_courier.core.events import EventChannel
from deck_courier.core.logging_config import configure_logging
from deck_courier.core.logging_utils import get_module_logger
from deck_courier.core.paths import CONFIG_PATH, DEFAULT_LOG_FILE
from deck_courier.core.settings import DeckSettings
from deck_courier.core.transfer.engine import TransferEngine


logger = get_module_logger("DeckCourier")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments with config file defaults."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", type=Path, default=CONFIG_PATH)
    known, _ = pre.parse_known_args(argv)

    config_manager = get_config_manager()
    settings = DeckSettings.from_config(config_manager.read_config(known.config), config_manager)

    parser = argparse.ArgumentParser(
        description="Deck Courier - recover new clips from a HyperDeck recorder",
        parents=[pre],
    )

    parser.add_argument(
        "--device",
        metavar="IP",
        default=None,
        help="Connect to this recorder at startup",
    )

    parser.add_argument(
        "--api-host",
        default=settings.api_host,
        help=f"Address for the websocket/HTTP server (default: {settings.api_host})",
    )

    parser.add_argument(
        "--api-port",
        type=int,
        default=settings.api_port,
        help=f"Port for the websocket/HTTP server (default: {settings.api_port})",
    )

    parser.add_argument(
        "--allow-remote",
        action="store_true",
        help="Accept API requests from hosts other than localhost",
    )

    parser.add_argument(
        "--log-level",
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        default=settings.log_level,
        help="Logging level (default: info)",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=settings.log_file or DEFAULT_LOG_FILE,
        help="Rotating log file location",
    )

    parser.add_argument(
        "--console",
        dest="console_output",
        action="store_true",
        default=settings.console_output,
        help="Also log to console",
    )

    parser.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        help="Log to file only",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose API error responses",
    )

    args = parser.parse_args(argv)
    args.settings = settings
    return args


async def main(argv: Optional[list[str]] = None) -> None:
    """
    Run the dispatcher server until SIGINT/SIGTERM.

    Stopping the server closes every client socket, so each monitoring
    session performs its final check before the device connection goes away.
    """
    args = parse_args(argv)
    settings: DeckSettings = args.settings
    settings.api_host = args.api_host
    settings.api_port = args.api_port

    configure_logging(
        args.log_level,
        force=True,
        console=args.console_output,
        log_file=args.log_file,
    )

    logger.info("=" * 60)
    logger.info("Deck Courier starting")
    logger.info("=" * 60)
    logger.info("Config: %s", args.config)
    logger.info("Log file: %s", args.log_file)

    events = EventChannel()
    client = ProtocolClient(events, settings)
    engine = TransferEngine(events=events, settings=settings)
    controller = APIController(client, engine, events, settings)
    server = APIServer(
        controller,
        host=settings.api_host,
        port=settings.api_port,
        localhost_only=not args.allow_remote,
        debug=args.debug,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    await server.start()

    if args.device:
        try:
            await controller.connect_device(args.device)
        except DeckCourierError as exc:
            logger.error("Startup connection failed: %s", exc)

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down, running final checks...")
        await server.stop()

    logger.info("=" * 60)
    logger.info("Deck Courier stopped")
    logger.info("=" * 60)


def run(argv: Optional[list[str]] = None) -> int:
    try:
        asyncio.run(main(argv))
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as exc:  # pragma: no cover - fatal guard
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
