"""Prometheus metrics server for kryten-ledger.

Subclasses BaseMetricsServer from kryten-py to expose ledger-specific
metrics and health details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

from .models import Asset

if TYPE_CHECKING:
    from .main import LedgerApp


class LedgerMetricsServer(BaseMetricsServer):
    """Ledger-specific Prometheus metrics endpoint."""

    def __init__(self, app: LedgerApp, port: int = 28290) -> None:
        super().__init__(
            service_name="ledger",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect ledger-specific Prometheus metrics."""
        app = self._app
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"ledger_events_processed_total {app.events_processed}")
        lines.append(f"ledger_commands_processed_total {app.commands_processed}")
        lines.append(f"ledger_wagers_total {app.wagers_total}")
        lines.append(f"ledger_wager_wins_total {app.wager_wins_total}")
        lines.append(f"ledger_wager_capped_payouts_total {app.capped_payouts_total}")
        lines.append(f"ledger_jackpots_total {app.jackpots_total}")
        lines.append(f"ledger_jackpot_wins_total {app.jackpot_wins_total}")
        lines.append(f"ledger_deposits_credited_total {app.deposits_credited_total}")
        lines.append(f"ledger_deposits_unmatched_total {app.deposits_unmatched_total}")
        lines.append(f"ledger_withdrawals_completed_total {app.withdrawals_completed_total}")
        lines.append(f"ledger_withdrawal_incidents_total {app.withdrawal_incidents_total}")

        # ── Gauges ───────────────────────────────────────────
        pool = await app.db.get_pool_state()
        lines.append(f"ledger_pool_balance {pool['balance']}")
        lines.append(f"ledger_house_retained {pool['house_retained']}")

        totals = await app.db.get_total_balances()
        for asset in Asset:
            lines.append(f'ledger_account_balance_total{{asset="{asset.value}"}} {totals[asset]}')

        lines.append(f"ledger_accounts {await app.db.get_account_count()}")

        if app.deposit_watcher and app.deposit_watcher.last_scanned_block is not None:
            lines.append(f"ledger_last_scanned_block {app.deposit_watcher.last_scanned_block}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        watcher = self._app.deposit_watcher
        return {
            "database": "connected" if self._app.db else "disconnected",
            "deposit_watcher": "running" if watcher else "disabled",
            "last_scanned_block": watcher.last_scanned_block if watcher else None,
        }
