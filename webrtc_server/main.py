import argparse
import asyncio
import logging
import signal
from dataclasses import replace

from .config import ServerConfig
from .config import config as global_config
from .core.events import ServerPhase
from .core.server import ServerController
from .errors import ConfigError
from .utils import generate_identity_bundle

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0


async def _serve_forever(server: ServerController) -> bool:
    """Run the server until an exit signal arrives. Returns False if it never came up."""
    loop = asyncio.get_running_loop()

    server.start()
    running = await loop.run_in_executor(None, server.wait_until_running, STARTUP_TIMEOUT)
    if not running:
        logger.error("🚨 Server did not start: %s", server.state.reason or server.state.phase.value)
        return False

    logger.info("📱 Open %s on both devices and accept the certificate warning", server.url)
    logger.info("💡 Use --log-level debug to see TLS handshake noise\n")

    # Wait on an event rather than sleeping in a loop so we can cancel cleanly
    stop = asyncio.Event()

    def _graceful_shutdown(*_):
        stop.set()

    # Handle Ctrl-C or `kill -TERM`
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_shutdown)

    # A listener failure also ends the run
    server.subscribe_state(
        lambda state: loop.call_soon_threadsafe(stop.set) if state.phase is ServerPhase.FAILED else None
    )

    await stop.wait()
    server.stop()
    await loop.run_in_executor(
        None, server.wait_for_state, lambda s: s.phase is not ServerPhase.RUNNING, STARTUP_TIMEOUT
    )
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Single-page HTTPS server for WebRTC secure contexts")
    parser.add_argument("--host", default=global_config.host_ip, help="IP/interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=global_config.https_port, help="HTTPS port (default: 8443)")
    parser.add_argument("--bundle", default=global_config.identity_bundle, help="PKCS#12 identity bundle")
    parser.add_argument("--passphrase", default=global_config.passphrase, help="Identity bundle passphrase")
    parser.add_argument(
        "--interface", default=global_config.wifi_interface, help="Network interface advertised in the URL"
    )
    parser.add_argument("--document", default=global_config.document_path, help="HTML page to serve")
    parser.add_argument(
        "--max-connections", type=int, default=global_config.max_connections, help="Concurrent connection cap"
    )
    parser.add_argument(
        "--idle-timeout", type=float, default=global_config.idle_timeout, help="Seconds to wait for a request"
    )
    parser.add_argument(
        "--generate-identity",
        action="store_true",
        help="Generate a self-signed identity bundle if none exists, then serve",
    )
    parser.add_argument(
        "--log-level",
        default=global_config.log_level,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Logging verbosity",
    )
    return parser


async def main() -> int:
    """Main function for the HTTPS server."""
    args = build_parser().parse_args()

    # Configure root logger *before* any further logging
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    # Build a config instance with the overrides supplied on the CLI
    try:
        cfg: ServerConfig = replace(
            global_config,
            host_ip=args.host,
            https_port=args.port,
            identity_bundle=args.bundle,
            passphrase=args.passphrase,
            wifi_interface=args.interface,
            document_path=args.document,
            max_connections=args.max_connections,
            idle_timeout=args.idle_timeout,
            log_level=args.log_level,
        )
    except ConfigError as e:
        logger.error("🚨 %s", e)
        return 2

    if args.generate_identity and not cfg.identity_bundle_exists:
        generate_identity_bundle(cfg.identity_bundle, cfg.passphrase)

    server = ServerController(cfg)

    logger.info("🖥️  WebRTC HTTPS server starting on port %s", cfg.https_port)
    ok = await _serve_forever(server)
    if ok:
        logger.info("✅ server shutdown complete.")
    return 0 if ok else 1


def main_cli() -> None:
    """Sync wrapper so the file is runnable as a script or module."""
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("👋 server interrupted")


if __name__ == "__main__":
    main_cli()
