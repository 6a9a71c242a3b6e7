"""Deposit watcher — periodic scan of confirmed blocks for pool deposits.

Each pass scans ``[cursor + 1, head - confirmations]`` (bounded by
``max_blocks_per_poll``), feeds every transfer into the reconciler and only
then advances the stored cursor. Passes never overlap: a tick that finds the
previous pass still running is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .chain_client import TRANSFER_TOPIC, address_topic, chain_amount, hex_to_int, topic_address
from .deposit_reconciler import DepositReconciler, DepositStatus
from .models import Asset, DepositEvent

if TYPE_CHECKING:
    from .chain_client import RpcChainClient
    from .config import LedgerConfig
    from .database import LedgerDatabase

CURSOR_NAME = "pool_deposits"


class DepositWatcher:
    """Polls the chain for confirmed deposits into the pool wallet."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        chain: RpcChainClient,
        reconciler: DepositReconciler,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._chain = chain
        self._reconciler = reconciler
        self._logger = logger or logging.getLogger("ledger.deposit_watcher")
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

        self.last_scanned_block: int | None = None
        self.polls_completed = 0
        self.polls_skipped = 0
        self.poll_errors = 0

    async def start(self) -> None:
        """Start the polling loop."""
        self._task = asyncio.create_task(self._poll_loop())
        self._logger.info(
            "Deposit watcher started (interval: %ss, confirmations: %d)",
            self._config.chain.poll_interval_seconds, self._config.chain.confirmations,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                self.poll_errors += 1
                self._logger.exception("Deposit poll failed")
            await asyncio.sleep(self._config.chain.poll_interval_seconds)

    # ══════════════════════════════════════════════════════════
    #  Polling
    # ══════════════════════════════════════════════════════════

    async def poll_once(self) -> int | None:
        """Run one pass. Returns the number of events seen, or None if skipped."""
        if self._lock.locked():
            self.polls_skipped += 1
            self._logger.debug("Previous deposit poll still running; skipping tick")
            return None
        async with self._lock:
            count = await self._scan()
            self.polls_completed += 1
            return count

    async def _scan(self) -> int:
        chain_cfg = self._config.chain
        head = await self._chain.block_number()
        confirmed = head - chain_cfg.confirmations
        if confirmed < 0:
            return 0

        cursor = await self._db.get_scan_cursor(CURSOR_NAME)
        if cursor is None:
            from_block = chain_cfg.start_block if chain_cfg.start_block is not None else confirmed
        else:
            from_block = cursor + 1
        if from_block > confirmed:
            return 0
        to_block = min(confirmed, from_block + chain_cfg.max_blocks_per_poll - 1)

        events = await self._native_deposits(from_block, to_block)
        events.extend(await self._stable_deposits(from_block, to_block))
        events.sort(key=lambda e: (e.block_number, e.log_index))

        credited = 0
        for event in events:
            result = await self._reconciler.reconcile(event)
            if result.status is DepositStatus.CREDITED:
                credited += 1

        await self._db.set_scan_cursor(CURSOR_NAME, to_block)
        self.last_scanned_block = to_block
        if events:
            self._logger.info(
                "Scanned blocks %d-%d: %d deposits, %d credited",
                from_block, to_block, len(events), credited,
            )
        return len(events)

    async def _native_deposits(self, from_block: int, to_block: int) -> list[DepositEvent]:
        pool = self._config.chain.pool_address
        decimals = self._config.assets.native.chain_decimals
        events: list[DepositEvent] = []
        for number in range(from_block, to_block + 1):
            block = await self._chain.get_block(number)
            for tx in block.get("transactions", []):
                if not isinstance(tx, dict):
                    continue
                if (tx.get("to") or "").lower() != pool:
                    continue
                value = hex_to_int(tx.get("value"))
                if value <= 0:
                    continue
                events.append(DepositEvent(
                    from_address=tx["from"],
                    asset=Asset.NATIVE,
                    amount=chain_amount(value, decimals),
                    block_number=number,
                    tx_hash=tx["hash"],
                ))
        return events

    async def _stable_deposits(self, from_block: int, to_block: int) -> list[DepositEvent]:
        token = self._config.chain.stable_token_address
        if not token:
            return []
        decimals = self._config.assets.stable.chain_decimals
        logs = await self._chain.get_logs(
            from_block, to_block, token,
            [TRANSFER_TOPIC, None, address_topic(self._config.chain.pool_address)],
        )
        events: list[DepositEvent] = []
        for log in logs:
            topics = log.get("topics", [])
            if log.get("removed") or len(topics) < 3:
                continue
            events.append(DepositEvent(
                from_address=topic_address(topics[1]),
                asset=Asset.STABLE,
                amount=chain_amount(hex_to_int(log.get("data")), decimals),
                block_number=hex_to_int(log.get("blockNumber")),
                tx_hash=log["transactionHash"],
                log_index=hex_to_int(log.get("logIndex")),
            ))
        return events
