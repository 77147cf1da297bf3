"""
Application wiring for notesync.

Builds the replica, state stores, remote store, network monitor, sync engine
and scheduler from an AppConfig, and runs the background scheduler until
interrupted.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx

from .config import AppConfig, ConfigValidator, EnvironmentLoader
from .database import SQLiteConnection
from .exceptions import NoteSyncException
from .remote import EncryptedRemoteStore, create_remote_store
from .remote.base import AuthorizationHandler
from .replica import SQLiteReplica
from .sync.engine import SyncEngine
from .sync.network import NetworkMonitor
from .sync.persistence import SQLiteStateStore, SyncSettingsStore
from .sync.scheduler import SyncScheduler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = "data/notesync.log") -> None:
    """Configure root logging: stdout plus an optional log file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(str(log_path)))
        except (OSError, PermissionError):
            # File logging not available, use stdout only
            pass

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


async def prompt_for_code(url: str) -> str:
    """Authorization handler for terminals: show the URL, read the code."""
    print(f"Open this URL to authorize notesync:\n\n  {url}\n", flush=True)
    return (await asyncio.to_thread(input, "Authorization code: ")).strip()


class NoteSyncApp:
    """Owns every notesync component for one process."""

    def __init__(self,
                 config: Optional[AppConfig] = None,
                 authorization_handler: Optional[AuthorizationHandler] = prompt_for_code):
        self.config = config
        self.authorization_handler = authorization_handler
        self.connection: Optional[SQLiteConnection] = None
        self.replica: Optional[SQLiteReplica] = None
        self.state_store: Optional[SQLiteStateStore] = None
        self.settings: Optional[SyncSettingsStore] = None
        self.remote: Optional[EncryptedRemoteStore] = None
        self.network: Optional[NetworkMonitor] = None
        self.engine: Optional[SyncEngine] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.http_client: Optional[httpx.AsyncClient] = None
        self.running = False

    async def initialize(self, env_file: Optional[str] = None) -> None:
        """Load configuration and build all components."""
        if self.config is None:
            self.config = EnvironmentLoader.load_config(env_file)
        logging.getLogger().setLevel(self.config.log_level.value)

        for problem in ConfigValidator.validate_config(self.config):
            logger.warning(f"Configuration: {problem}")

        logger.info("Initializing notesync...")

        self.connection = SQLiteConnection(self.config.db_path)
        self.replica = SQLiteReplica(self.connection)
        self.state_store = SQLiteStateStore(self.connection)
        await self.replica.initialize()

        self.settings = SyncSettingsStore(self.state_store, defaults=self.config.sync)
        self.http_client = httpx.AsyncClient(timeout=30.0)
        self.remote = create_remote_store(
            self.config,
            authorization_handler=self.authorization_handler,
            http_client=self.http_client,
        )
        self.network = NetworkMonitor(http_client=self.http_client)

        self.engine = SyncEngine(
            remote=self.remote,
            replica=self.replica,
            state_store=self.state_store,
            settings=self.settings,
            network=self.network,
            retry_config=self.config.retry,
        )
        self.engine.set_user_id(self.config.user_id)
        await self.engine.init()
        self.scheduler = SyncScheduler(self.engine, self.settings)

        try:
            restored = await self.remote.restore_session()
            logger.info(
                f"{self.remote.provider_name} session "
                f"{'restored' if restored else 'not available; sign in required'}"
            )
        except NoteSyncException as e:
            logger.warning(f"Could not restore {self.remote.provider_name} session: {e}")

        logger.info("All components initialized successfully")

    async def start(self) -> None:
        """Run the background scheduler until stop() is called."""
        if not self.engine or not self.scheduler:
            raise RuntimeError("Application not initialized. Call initialize() first.")

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                asyncio.get_running_loop().add_signal_handler(sig, self._request_stop)
            except NotImplementedError:
                pass

        await self.network.check_connectivity()
        await self.scheduler.start()
        self.running = True
        logger.info("notesync is running. Press Ctrl+C to stop.")
        while self.running:
            await asyncio.sleep(1)
        await self.stop()

    async def stop(self) -> None:
        """Shut down components in reverse order of initialization."""
        self.running = False
        if self.scheduler and self.scheduler.is_running:
            await self.scheduler.stop(wait=False)
        if self.engine:
            await self.engine.close()
        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None
        if self.connection:
            await self.connection.disconnect()
            self.connection = None
        logger.info("notesync stopped")

    def _request_stop(self) -> None:
        logger.info("Shutdown requested")
        self.running = False
