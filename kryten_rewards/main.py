"""Service orchestrator — RewardsApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → build components → connect → subscribe → metrics → run.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from kryten import KrytenClient

from . import __version__
from .cache import TTLCache
from .command_handler import CommandHandler
from .config import RewardsConfig, load_config
from .database import RewardsDatabase
from .ledger import Ledger
from .metrics_server import RewardsMetricsServer
from .offline_queue import OfflineQueue
from .rate_limiter import RateLimiter
from .remote_config import ConfigProvider, RemoteConfigClient
from .rewards_service import RewardsService
from .scheduler import Scheduler
from .transaction_log import TransactionLog


def _decode_notification(msg: Any) -> dict[str, Any]:
    """Accept a raw NATS message, bytes or an already-decoded dict."""
    if isinstance(msg, dict):
        return msg
    data = getattr(msg, "data", msg)
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if not data:
        return {}
    decoded = json.loads(data)
    return decoded if isinstance(decoded, dict) else {}


class RewardsApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("rewards")

        # Components (initialized in start())
        self.config: RewardsConfig | None = None
        self.client: KrytenClient | None = None
        self.db: RewardsDatabase | None = None
        self.cache: TTLCache | None = None
        self.remote_client: RemoteConfigClient | None = None
        self.config_provider: ConfigProvider | None = None
        self.transaction_log: TransactionLog | None = None
        self.ledger: Ledger | None = None
        self.rate_limiter: RateLimiter | None = None
        self.offline_queue: OfflineQueue | None = None
        self.service: RewardsService | None = None
        self.command_handler: CommandHandler | None = None
        self.metrics_server: RewardsMetricsServer | None = None
        self.scheduler: Scheduler | None = None

        # State
        self._running = False
        self._start_time: float | None = None

        # Counters (for metrics)
        self.commands_processed: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def build(self, config: RewardsConfig) -> None:
        """Initialize storage and wire the domain components."""
        self.config = config

        self.db = RewardsDatabase(config.database.path, self.logger)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", config.database.path)

        self.cache = TTLCache(config.cache.ttl_seconds, logger=self.logger)
        self.remote_client = RemoteConfigClient(config.config_provider, self.logger)
        self.config_provider = ConfigProvider(
            config=config,
            cache=self.cache,
            logger=self.logger,
            client=self.remote_client,
        )
        self.transaction_log = TransactionLog(self.db)
        self.ledger = Ledger(
            config=config,
            store=self.db,
            transaction_log=self.transaction_log,
            config_provider=self.config_provider,
            logger=self.logger,
        )

        self.rate_limiter = RateLimiter(config.device.state_path, config.rate_limits.rules, self.logger)
        await self.rate_limiter.initialize()
        self.offline_queue = OfflineQueue(config.device.state_path, self.logger)
        await self.offline_queue.initialize()
        self.logger.info("Device state initialized: %s", config.device.state_path)

        self.service = RewardsService(
            ledger=self.ledger,
            rate_limiter=self.rate_limiter,
            offline_queue=self.offline_queue,
            logger=self.logger,
        )

    async def start(self) -> None:
        """Start the rewards service — canonical kryten-py sequence."""
        self.logger.info("Starting kryten-rewards...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded from %s", self.config_path)

        # 2. Database, device state and domain components
        await self.build(config)

        # 3. Start configuration provider HTTP client
        if self.remote_client.enabled:
            await self.remote_client.start()
            self.logger.info("Config provider client started: %s", config.config_provider.base_url)

        # 4. Create KrytenClient and connect to NATS
        self.client = KrytenClient(self.config)
        await self.client.connect()
        self.logger.info("Connected to NATS")

        # 5. Subscribe to configuration change notifications
        await self.client.subscribe(
            self.config.commands.config_changed_subject,
            self._handle_config_changed,
        )

        # 6. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28290
        self.metrics_server = RewardsMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 7. Start command handler
        self.command_handler = CommandHandler(self, self.client, self.logger)
        await self.command_handler.connect()
        self.logger.info("Command handler ready on %s", self.config.commands.subject)

        # 8. Start scheduler; replay anything left queued from a previous run
        self.scheduler = Scheduler(
            config=self.config,
            store=self.db,
            cache=self.cache,
            rate_limiter=self.rate_limiter,
            service=self.service,
            logger=self.logger,
        )
        await self.scheduler.start()
        if await self.offline_queue.size():
            await self.service.drain_queue()

        # 9. Mark running
        self._running = True
        self.logger.info("kryten-rewards started successfully (v%s)", __version__)

        # 10. Block on client event loop
        await self.client.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-rewards...")
        self._running = False

        if self.scheduler:
            await self.scheduler.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.remote_client:
            await self.remote_client.stop()
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-rewards stopped.")

    async def _handle_config_changed(self, msg) -> None:
        """Invalidate cached snapshots named by a change notification."""
        try:
            payload = _decode_notification(msg)
            self.config_provider.handle_change_notification(payload.get("key"))
        except Exception:
            self.logger.exception("Failed to handle config change notification")
