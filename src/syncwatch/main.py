"""SyncWatch - Combined Entry Point.

Runs both the Monitor and Dashboard concurrently using asyncio, sharing one
job coordinator.

Usage:
    syncwatch                # Run both monitor and dashboard
    syncwatch monitor        # Run only the monitor
    syncwatch dashboard      # Run only the dashboard
    syncwatch clean-locks    # Remove stale lock files and exit
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import yaml

from syncwatch.monitor.coordinator import JobCoordinator
from syncwatch.monitor.main import run_monitor, setup_logging
from syncwatch.shared.config import AppConfig, get_config, load_config, set_config

logger = logging.getLogger(__name__)


async def run_monitor_async(coordinator: JobCoordinator, config: AppConfig, stop_event: threading.Event) -> None:
    """Run the monitor in a thread to not block the event loop."""
    logger.info("🔍 Starting SyncWatch Monitor...")
    try:
        await asyncio.to_thread(run_monitor, stop_event, config, coordinator)
    except Exception as e:
        logger.error(f"Monitor error: {e}")
        raise


async def run_dashboard_async(server, stop_event: threading.Event) -> None:
    """Run the FastAPI dashboard with uvicorn. The monitor stops when the server does."""
    logger.info(f"📊 Starting Dashboard on http://{server.config.host}:{server.config.port}")
    try:
        await server.serve()
    except Exception as e:
        logger.error(f"Dashboard error: {e}")
        raise
    finally:
        stop_event.set()


async def main(config: Optional[AppConfig] = None, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run both monitor and dashboard concurrently."""
    import uvicorn

    from syncwatch.dashboard.main import create_app

    config = config or get_config()
    coordinator = JobCoordinator.from_config(config)

    logger.info("=" * 60)
    logger.info("SyncWatch - Starting All Services")
    logger.info("=" * 60)

    stop_event = threading.Event()
    server = uvicorn.Server(
        uvicorn.Config(
            app=create_app(coordinator),
            host=host or config.dashboard.host,
            port=port or config.dashboard.port,
            log_level="info",
            access_log=False,
        )
    )

    def signal_handler():
        logger.info("⚠️ Shutdown signal received, stopping services...")
        stop_event.set()
        server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda s, f: signal_handler())

    try:
        results = await asyncio.gather(
            run_monitor_async(coordinator, config, stop_event),
            run_dashboard_async(server, stop_event),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Service exited with error: {result}")
    except asyncio.CancelledError:
        logger.info("Services cancelled")
    finally:
        stop_event.set()
        server.should_exit = True
        logger.info("✅ All services stopped")


def clean_locks(config: AppConfig) -> int:
    """Remove stale lock files for every configured job."""
    coordinator = JobCoordinator.from_config(config)
    removed = coordinator.cleanup_stale_locks()
    logger.info(f"Removed {removed} stale lock file(s)")
    return removed


def cli() -> None:
    """CLI entry point for the package."""
    parser = argparse.ArgumentParser(
        prog="syncwatch",
        description="SyncWatch - rclone bisync job monitor and dashboard",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["monitor", "dashboard", "clean-locks"],
        default=None,
        help="Component to run: 'monitor', 'dashboard', 'clean-locks', or omit for both",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $SYNCWATCH_CONFIG or ./config.yaml)",
    )
    parser.add_argument("--port", type=int, default=None, help="Port for the dashboard")
    parser.add_argument("--host", default=None, help="Host for the dashboard")

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Could not load configuration: {e}", file=sys.stderr)
        sys.exit(2)
    set_config(config)
    setup_logging(config.monitor)

    try:
        if args.command == "monitor":
            logger.info("=" * 60)
            logger.info("SyncWatch - Monitor Only")
            logger.info("=" * 60)
            run_monitor(config=config)

        elif args.command == "dashboard":
            import uvicorn

            from syncwatch.dashboard.main import app

            host = args.host or config.dashboard.host
            port = args.port or config.dashboard.port
            logger.info("=" * 60)
            logger.info("SyncWatch - Dashboard Only")
            logger.info(f"URL: http://{host}:{port}")
            logger.info("=" * 60)
            uvicorn.run(app, host=host, port=port, log_level="info")

        elif args.command == "clean-locks":
            clean_locks(config)

        else:
            asyncio.run(main(config, args.host, args.port))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
