"""
dnsmesh Daemon.

Main entry point that wires the controller together:
- Object store fed from policy manifests
- Reconciler and worker pool (controller)
- Policy index shared with the query API
- Event audit database (optional)
- Policy query API server
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dnsmesh import __version__
from dnsmesh.api import create_app
from dnsmesh.api.server import PolicyQueryServer
from dnsmesh.audit.database import AuditDatabase
from dnsmesh.config import DnsMeshConfig, load_config, validate_config
from dnsmesh.controller.events import DatabaseEventRecorder, EventRecorder
from dnsmesh.controller.manager import ControllerManager
from dnsmesh.controller.manifests import ManifestSync
from dnsmesh.controller.reconciler import Reconciler
from dnsmesh.controller.store import InMemoryObjectStore
from dnsmesh.errors import DnsMeshError
from dnsmesh.policy.index import PolicyIndex

logger = logging.getLogger("dnsmesh")


class DnsMeshDaemon:
    """
    Main dnsmesh daemon.

    Owns the object store and the policy index, and runs the controller
    and the query API against them until asked to stop.
    """

    def __init__(self, config: DnsMeshConfig) -> None:
        """
        Initialize daemon with configuration.

        Args:
            config: Validated configuration object
        """
        self.config = config
        self._setup_logging()

        self.store = InMemoryObjectStore()
        self.index = PolicyIndex()

        # Initialized on start
        self._db: AuditDatabase | None = None
        self.recorder: EventRecorder | None = None
        self.manager: ControllerManager | None = None
        self.manifests: ManifestSync | None = None
        self.server: PolicyQueryServer | None = None
        self._server_task: asyncio.Task | None = None

        # State
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._start_time: datetime | None = None

    def _setup_logging(self) -> None:
        """Configure logging based on config."""
        level = getattr(logging, self.config.daemon.log_level.upper(), logging.INFO)
        handlers: list[logging.Handler] = [logging.StreamHandler()]
        if self.config.daemon.log_file:
            log_path = Path(self.config.daemon.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )

    @property
    def db(self) -> AuditDatabase:
        """Get or initialize audit database.

        Creates parent directories automatically and retries once on
        failure (e.g. locked database) before raising.
        """
        if self._db is None:
            db_path = Path(self.config.database.path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._db = AuditDatabase(str(db_path), wal_mode=self.config.database.wal_mode)
            except Exception as e:
                logger.warning("Database init failed (%s), retrying...", e)
                time.sleep(0.5)
                self._db = AuditDatabase(str(db_path), wal_mode=self.config.database.wal_mode)
        return self._db

    def _build(self) -> None:
        """Construct the controller and API components."""
        if self.config.database.enabled:
            logger.info("Initializing event database: %s", self.config.database.path)
            self.recorder = DatabaseEventRecorder(self.db)
        else:
            self.recorder = EventRecorder()

        ctl = self.config.controller
        reconciler = Reconciler(
            store=self.store,
            index=self.index,
            recorder=self.recorder,
            finalizer=ctl.finalizer,
        )
        self.manager = ControllerManager(
            store=self.store,
            reconciler=reconciler,
            workers=ctl.workers,
            backoff_base=ctl.backoff_base,
            backoff_max=ctl.backoff_max,
            resync_interval=ctl.resync_interval,
        )

        if self.config.manifests.path:
            self.manifests = ManifestSync(
                store=self.store,
                path=self.config.manifests.path,
                poll_interval=self.config.manifests.poll_interval,
            )

        api = self.config.api
        app = create_app(
            index=self.index,
            request_timeout=api.request_timeout,
            debug=self.config.daemon.log_level == "debug",
        )
        self.server = PolicyQueryServer(
            app,
            host=api.host,
            port=api.port,
            idle_timeout=api.idle_timeout,
            shutdown_timeout=api.shutdown_timeout,
            log_level=self.config.daemon.log_level,
        )

    def _load_manifests(self) -> None:
        """Apply manifests once; problems are logged, not fatal."""
        if self.manifests is None:
            logger.warning("No manifest path configured; store starts empty")
            return
        try:
            result = self.manifests.sync()
            logger.info(
                "Loaded %d policies from %s",
                len(result.created) + len(result.updated) + result.unchanged,
                self.manifests.path,
            )
        except FileNotFoundError:
            logger.warning("Manifest path not found: %s", self.manifests.path)
        except DnsMeshError as e:
            logger.error("Failed to load manifests from %s: %s", self.manifests.path, e)

    async def start(self) -> None:
        """Start the daemon and all services."""
        logger.info("Starting dnsmesh daemon v%s", __version__)
        self.running = True
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._build()
        assert self.manager is not None and self.server is not None

        # Bind first so an unusable port fails before any work starts
        self.server.bind()

        self._load_manifests()
        self.manager.start()
        if self.manifests is not None and self.config.manifests.hot_reload:
            self.manifests.start()

        self._server_task = asyncio.create_task(self.server.serve())
        logger.info("Daemon components initialized")

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        logger.info("Stopping dnsmesh daemon...")
        self.running = False
        self._shutdown_event.set()

        # Stop accepting requests, give in-flight ones the grace period
        if self.server is not None:
            self.server.stop()
        if self._server_task is not None and not self._server_task.done():
            grace = self.config.api.shutdown_timeout + 1.0
            try:
                await asyncio.wait_for(self._server_task, timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("API server did not stop within %.1fs", grace)
            except Exception as e:
                logger.error("API server error during shutdown: %s", e)

        if self.manifests is not None:
            self.manifests.stop()
        if self.manager is not None:
            await asyncio.to_thread(self.manager.stop)

        if self._db is not None:
            self._db.close()

        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Run until a shutdown signal arrives or the API server exits."""
        try:
            await self.start()
            assert self._server_task is not None

            waiter = asyncio.create_task(self._shutdown_event.wait())
            done, _ = await asyncio.wait(
                {waiter, self._server_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            waiter.cancel()
            if self._server_task in done:
                # Propagates ServerError; a clean exit just stops the daemon
                self._server_task.result()
                logger.warning("API server exited, shutting down")

        except asyncio.CancelledError:
            logger.info("Daemon loop cancelled")
        finally:
            await self.stop()

    def handle_signal(self, signum: int) -> None:
        """Handle termination signals."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal %s, initiating shutdown", sig_name)
        self.running = False
        self._shutdown_event.set()

    def get_statistics(self) -> dict[str, Any]:
        """Get daemon statistics."""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            "uptime_seconds": uptime,
            "running": self.running,
            "stored_policies": len(self.store),
            "indexed_policies": self.index.size(),
            "controller": self.manager.get_statistics() if self.manager else None,
        }


async def run_daemon(config: DnsMeshConfig) -> int:
    """Run the daemon with the given configuration."""
    daemon = DnsMeshDaemon(config)

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))

    try:
        await daemon.run()
    except DnsMeshError as e:
        logger.error("Daemon failed: %s", e)
        return 1
    except Exception as e:
        logger.exception("Daemon crashed: %s", e)
        return 1

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the daemon."""
    parser = argparse.ArgumentParser(
        prog="dnsmesh-daemon",
        description="dnsmesh DNS policy controller",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-m", "--manifests",
        metavar="PATH",
        help="Policy manifest file or directory (overrides config)",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        help="API port (overrides config)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Override settings from command line
    if args.manifests:
        config.manifests.path = args.manifests
    if args.port is not None:
        config.api.port = args.port
    if args.verbose:
        config.daemon.log_level = "debug"

    # Validate configuration
    errors = validate_config(config)
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    return asyncio.run(run_daemon(config))


if __name__ == "__main__":
    sys.exit(main())
