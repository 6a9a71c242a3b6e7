"""Service orchestrator — LedgerApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → engines → register handlers → connect → subscribe →
metrics → periodic tasks → run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from kryten import KrytenClient

from . import __version__
from .chain_client import RpcChainClient, TransferClient
from .command_handler import SUBJECT, CommandHandler
from .config import LedgerConfig, load_config
from .database import LedgerDatabase
from .deposit_reconciler import DepositReconciler
from .deposit_watcher import DepositWatcher
from .jackpot import JackpotController
from .metrics_server import LedgerMetricsServer
from .pm_handler import PmHandler
from .progression import ProgressionTracker
from .wager_engine import WagerEngine
from .withdrawal import WithdrawalSettler


class LedgerApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("ledger")

        # Components (initialized in start())
        self.config: LedgerConfig | None = None
        self.client: KrytenClient | None = None
        self.db: LedgerDatabase | None = None
        self.progression: ProgressionTracker | None = None
        self.wager_engine: WagerEngine | None = None
        self.jackpot: JackpotController | None = None
        self.reconciler: DepositReconciler | None = None
        self.withdrawals: WithdrawalSettler | None = None
        self.transfer_client: TransferClient | None = None
        self.chain_client: RpcChainClient | None = None
        self.deposit_watcher: DepositWatcher | None = None
        self.pm_handler: PmHandler | None = None
        self.command_handler: CommandHandler | None = None
        self.metrics_server: LedgerMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._counter_persistence_task: asyncio.Task | None = None

        # Counters (for metrics)
        self.events_processed: int = 0
        self.commands_processed: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ── Aggregated engine counters ───────────────────────────

    @property
    def wagers_total(self) -> int:
        return self.wager_engine.metrics_wagers if self.wager_engine else 0

    @property
    def wager_wins_total(self) -> int:
        return self.wager_engine.metrics_wins if self.wager_engine else 0

    @property
    def capped_payouts_total(self) -> int:
        return self.wager_engine.metrics_capped if self.wager_engine else 0

    @property
    def jackpots_total(self) -> int:
        return self.jackpot.metrics_jackpots if self.jackpot else 0

    @property
    def jackpot_wins_total(self) -> int:
        return self.jackpot.metrics_jackpot_wins if self.jackpot else 0

    @property
    def deposits_credited_total(self) -> int:
        return self.reconciler.metrics_credited if self.reconciler else 0

    @property
    def deposits_unmatched_total(self) -> int:
        return self.reconciler.metrics_unmatched if self.reconciler else 0

    @property
    def withdrawals_completed_total(self) -> int:
        return self.withdrawals.metrics_completed if self.withdrawals else 0

    @property
    def withdrawal_incidents_total(self) -> int:
        return self.withdrawals.metrics_incidents if self.withdrawals else 0

    # ------------------------------------------------------------------
    # Metrics counter persistence (NATS KV)
    # ------------------------------------------------------------------
    _COUNTERS_KV_BUCKET = "kryten_ledger_state"
    _COUNTERS_KV_KEY = "counters"
    _COUNTERS_SAVE_INTERVAL = 300  # seconds
    _APP_COUNTERS = ["events_processed", "commands_processed"]
    # (kv name, component attribute, component counter)
    _ENGINE_COUNTERS = [
        ("wagers_total", "wager_engine", "metrics_wagers"),
        ("wager_wins_total", "wager_engine", "metrics_wins"),
        ("capped_payouts_total", "wager_engine", "metrics_capped"),
        ("jackpots_total", "jackpot", "metrics_jackpots"),
        ("jackpot_wins_total", "jackpot", "metrics_jackpot_wins"),
        ("deposits_credited_total", "reconciler", "metrics_credited"),
        ("deposits_unmatched_total", "reconciler", "metrics_unmatched"),
        ("withdrawals_completed_total", "withdrawals", "metrics_completed"),
        ("withdrawal_incidents_total", "withdrawals", "metrics_incidents"),
    ]

    def _counter_snapshot(self) -> dict[str, int]:
        data = {name: getattr(self, name) for name in self._APP_COUNTERS}
        for name, _, _ in self._ENGINE_COUNTERS:
            data[name] = getattr(self, name)
        return data

    async def _save_counters(self) -> None:
        """Persist volatile metrics counters to NATS KV."""
        try:
            await self.client.kv_put(
                self._COUNTERS_KV_BUCKET,
                self._COUNTERS_KV_KEY,
                self._counter_snapshot(),
                as_json=True,
            )
            self.logger.debug("Persisted metrics counters to KV")
        except Exception:
            self.logger.exception("Failed to persist metrics counters")

    async def _restore_counters(self) -> None:
        """Restore volatile metrics counters from NATS KV on startup."""
        try:
            data = await self.client.kv_get(
                self._COUNTERS_KV_BUCKET,
                self._COUNTERS_KV_KEY,
                default={},
                parse_json=True,
            )
            if not data:
                self.logger.info("No persisted counters found, starting fresh")
                return
            for name in self._APP_COUNTERS:
                if name in data:
                    setattr(self, name, int(data[name]))
            for name, component, counter in self._ENGINE_COUNTERS:
                target = getattr(self, component)
                if target is not None and name in data:
                    setattr(target, counter, int(data[name]))
            self.logger.info("Restored metrics counters from KV: %s", data)
        except Exception:
            self.logger.exception("Failed to restore metrics counters from KV")

    async def _counter_persistence_loop(self) -> None:
        """Periodically save counters to KV."""
        try:
            while True:
                await asyncio.sleep(self._COUNTERS_SAVE_INTERVAL)
                await self._save_counters()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_components(self, config: LedgerConfig) -> None:
        """Construct the database and engines for ``config``."""
        self.config = config
        self.db = LedgerDatabase(config.database.path, self.logger)
        self.progression = ProgressionTracker(config, self.db, self.logger)
        self.wager_engine = WagerEngine(config, self.db, self.progression, self.logger)
        self.jackpot = JackpotController(config, self.db, self.progression, self.logger)
        self.reconciler = DepositReconciler(config, self.db, self.progression, self.logger)
        self.transfer_client = TransferClient(config.signer, self.logger)
        self.withdrawals = WithdrawalSettler(config, self.db, self.transfer_client, self.logger)
        self.pm_handler = PmHandler(
            config=config,
            database=self.db,
            client=None,  # Set after client creation
            wager_engine=self.wager_engine,
            jackpot=self.jackpot,
            withdrawals=self.withdrawals,
            progression=self.progression,
            logger=self.logger,
        )

    async def start(self) -> None:
        """Start the ledger service — canonical kryten-py sequence."""
        self.logger.info("Starting kryten-ledger...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d channel(s)", len(config.channels))

        # 2-3. Database and engines
        self.build_components(config)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", config.database.path)

        # 4. Create KrytenClient and wire it in
        self.client = KrytenClient(self.config)
        self.pm_handler._client = self.client
        self.pm_handler.start_pm_worker()

        # 4b. Outbound HTTP clients
        await self.transfer_client.start()
        self.logger.info("Transfer client ready: %s", self.config.signer.base_url)

        # 5. Register event handlers BEFORE connect
        @self.client.on("pm")
        async def handle_pm(event):
            try:
                self.events_processed += 1
                await self.pm_handler.handle_pm(event)
            except Exception:
                self.logger.exception("pm handler error for %s", getattr(event, "username", "?"))

        # 6. Connect to NATS
        await self.client.connect()
        self.logger.info("Connected to NATS")

        # 6b. Restore persisted metrics counters from KV
        await self.client.get_or_create_kv_store(
            self._COUNTERS_KV_BUCKET,
            description="kryten-ledger volatile metrics counters",
        )
        await self._restore_counters()
        self._counter_persistence_task = asyncio.create_task(
            self._counter_persistence_loop(),
        )

        # 7. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28290
        self.metrics_server = LedgerMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 8. Start command handler
        self.command_handler = CommandHandler(self, self.client, self.logger)
        await self.command_handler.connect()
        self.logger.info("Command handler ready on %s", SUBJECT)

        # 9. Start deposit watcher
        chain_cfg = self.config.chain
        if chain_cfg.enabled and chain_cfg.pool_address:
            self.chain_client = RpcChainClient(chain_cfg, self.logger)
            await self.chain_client.start()
            self.deposit_watcher = DepositWatcher(
                config=self.config,
                database=self.db,
                chain=self.chain_client,
                reconciler=self.reconciler,
                logger=self.logger,
            )
            await self.deposit_watcher.start()
        else:
            self.logger.info("Deposit watcher disabled; deposits arrive via deposit.notify")

        # 10. Mark running
        self._running = True
        self.logger.info("kryten-ledger started successfully (v%s)", __version__)

        # 11. Block on client event loop
        await self.client.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-ledger...")
        self._running = False

        if self._counter_persistence_task:
            self._counter_persistence_task.cancel()
            try:
                await self._counter_persistence_task
            except asyncio.CancelledError:
                pass
        await self._save_counters()

        if self.deposit_watcher:
            await self.deposit_watcher.stop()
        if self.chain_client:
            await self.chain_client.stop()
        if self.pm_handler:
            await self.pm_handler.stop_pm_worker()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.transfer_client:
            await self.transfer_client.stop()
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-ledger stopped.")
