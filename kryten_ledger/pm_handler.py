"""PM command handler — processes user commands sent via PM.

Subscribes to 'pm' events via @client.on("pm"). Parses incoming PM text as
commands, dispatches to handlers, and sends responses via client.send_pm().
This is the only module that turns ledger results into user-facing text.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Awaitable, Callable

from .database import LEADERBOARD_CRITERIA, MIN_WAGERS_FOR_WINRATE, LedgerDatabase
from .errors import AddressInUse, ErrorKind, InvalidAddress
from .jackpot import JackpotStatus
from .models import POOL_ASSET, Asset
from .progression import ProgressionResult, badge_for_level
from .session import (
    Cancelled,
    Confirm,
    Decline,
    ExecuteWithdrawal,
    JackpotOffered,
    PlaceJackpot,
    SessionState,
    SessionStore,
    WithdrawRequested,
)
from .utils import normalize_user_id, parse_decimal
from .wager_engine import WagerStatus

if TYPE_CHECKING:
    from kryten import ChatMessageEvent, KrytenClient

    from .config import LedgerConfig
    from .jackpot import JackpotController
    from .progression import ProgressionTracker
    from .wager_engine import WagerEngine
    from .withdrawal import WithdrawalSettler


ERROR_TEXT = {
    ErrorKind.NOT_REGISTERED: "You need to register first: register <your wallet address>",
    ErrorKind.INVALID_STAKE: "That stake is not allowed.",
    ErrorKind.INVALID_AMOUNT: "That amount is not valid.",
    ErrorKind.INVALID_ADDRESS: "That is not a valid wallet address.",
    ErrorKind.ADDRESS_IN_USE: "That address is already registered to another user.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient balance.",
    ErrorKind.WITHDRAWAL_LIMIT_EXCEEDED: "That is above the withdrawal limit.",
    ErrorKind.DISABLED: "That feature is currently disabled.",
    ErrorKind.STORE_UNAVAILABLE: "The ledger is busy. Please try again.",
}


def fmt(amount: Decimal | None) -> str:
    """Render a ledger amount without trailing zeros."""
    if amount is None:
        return "?"
    if amount == 0:
        return "0"
    return f"{amount.normalize():f}"


# ══════════════════════════════════════════════════════════
#  PM Rate Limiter
# ══════════════════════════════════════════════════════════

class PmRateLimiter:
    """Sliding-window rate limiter for PM commands per user."""

    def __init__(self, max_per_minute: int = 10) -> None:
        self._max = max_per_minute
        self._counters: dict[str, list[float]] = {}

    def check(self, username: str) -> bool:
        """Return True if the command should be allowed."""
        now = datetime.now(timezone.utc).timestamp()
        cutoff = now - 60
        window = [t for t in self._counters.get(username, []) if t > cutoff]

        if len(window) >= self._max:
            self._counters[username] = window
            return False

        window.append(now)
        self._counters[username] = window
        return True

    def cleanup(self) -> None:
        """Remove stale entries (call periodically)."""
        cutoff = datetime.now(timezone.utc).timestamp() - 120
        stale = [k for k, v in self._counters.items() if all(t < cutoff for t in v)]
        for k in stale:
            del self._counters[k]


class PmHandler:
    """Handles PM commands from users."""

    def __init__(
        self,
        config: LedgerConfig,
        database: LedgerDatabase,
        client: KrytenClient | None,
        wager_engine: WagerEngine,
        jackpot: JackpotController,
        withdrawals: WithdrawalSettler,
        progression: ProgressionTracker,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._client = client
        self._wagers = wager_engine
        self._jackpot = jackpot
        self._withdrawals = withdrawals
        self._progression = progression
        self._logger = logger or logging.getLogger("ledger.pm")

        self._bot_username_lower = config.bot.username.lower()
        self._rate_limiter = PmRateLimiter(
            max_per_minute=config.commands.rate_limit_per_minute,
        )
        self._sessions = SessionStore(timeout=config.commands.session_timeout_seconds)
        self._last_housekeeping = time.monotonic()

        # PM delivery queue, throttled to 1 message per _PM_SEND_INTERVAL
        self._pm_queue: asyncio.Queue[tuple[str, str, str]] = asyncio.Queue()
        self._pm_worker_task: asyncio.Task | None = None

        self._command_map: dict[str, Callable[..., Awaitable[str]]] = {
            "help": self._cmd_help,
            "register": self._cmd_register,
            "balance": self._cmd_balance,
            "bal": self._cmd_balance,
            "deposit": self._cmd_deposit,
            "bet": self._cmd_bet,
            "play": self._cmd_bet,
            "jackpot": self._cmd_jackpot,
            "yes": self._cmd_yes,
            "no": self._cmd_no,
            "withdraw": self._cmd_withdraw,
            "level": self._cmd_level,
            "xp": self._cmd_level,
            "top": self._cmd_top,
            "pool": self._cmd_pool,
            "history": self._cmd_history,
        }

    @property
    def active_sessions(self) -> int:
        self._sessions.prune(time.monotonic())
        return len(self._sessions)

    def housekeeping(self) -> None:
        """Forget idle rate-limit windows and timed-out sessions."""
        self._last_housekeeping = time.monotonic()
        self._rate_limiter.cleanup()
        pruned = self._sessions.prune(self._last_housekeeping)
        if pruned:
            self._logger.debug("Expired %d pending session(s)", pruned)

    async def handle_pm(self, event: ChatMessageEvent) -> None:
        """Process an incoming PM event."""
        username = event.username
        channel = event.channel

        if username.lower() == self._bot_username_lower:
            return

        text = event.message.strip()
        if not text:
            return

        if time.monotonic() - self._last_housekeeping >= self._HOUSEKEEPING_INTERVAL:
            self.housekeeping()

        if not self._rate_limiter.check(username):
            await self._send_pm(channel, username, "⏳ Slow down! Try again in a moment.")
            return

        parts = text.split(None, 1)
        command = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        try:
            await self._db.record_login(normalize_user_id(username))
            handler = self._command_map.get(command)
            if handler:
                response = await handler(username, channel, args)
            else:
                response = "❓ Unknown command. Try 'help'."
            await self._send_pm(channel, username, response)
        except Exception:
            self._logger.exception("Command handler error for %s/%s", username, command)
            await self._send_pm(
                channel, username,
                "❌ Something went wrong processing your command. Please try again.",
            )

    # ══════════════════════════════════════════════════════════
    #  Account commands
    # ══════════════════════════════════════════════════════════

    async def _cmd_help(self, username: str, channel: str, args: list[str]) -> str:
        stakes = ", ".join(fmt(s) for s in self._wagers.allowed_stakes)
        return "\n".join([
            "Ledger Bot",
            "━" * 15,
            "register <address> · deposit",
            "balance · history",
            f"bet <stake>  ({stakes})",
            f"jackpot  (stake {fmt(self._jackpot.stake)})",
            "withdraw <eth|usdc> <amount>",
            "yes · no",
            "level · top · pool",
        ])

    async def _cmd_register(self, username: str, channel: str, args: list[str]) -> str:
        if not args:
            return "Usage: register <wallet address>"
        try:
            account = await self._db.upsert_account(
                normalize_user_id(username), args[0], username=username,
            )
        except (InvalidAddress, AddressInUse) as e:
            return f"❌ {ERROR_TEXT[e.kind]}"
        return (
            f"✅ Registered {account.address}.\n"
            "Deposits from this address are credited automatically. Try 'deposit'."
        )

    async def _cmd_balance(self, username: str, channel: str, args: list[str]) -> str:
        account = await self._db.get_account(normalize_user_id(username))
        if account is None:
            return ERROR_TEXT[ErrorKind.NOT_REGISTERED]
        assets = self._config.assets
        return (
            f"💰 {fmt(account.native_balance)} {assets.native.symbol}"
            f" · {fmt(account.stable_balance)} {assets.stable.symbol}"
        )

    async def _cmd_deposit(self, username: str, channel: str, args: list[str]) -> str:
        account = await self._db.get_account(normalize_user_id(username))
        if account is None:
            return ERROR_TEXT[ErrorKind.NOT_REGISTERED]
        pool = self._config.chain.pool_address
        if not pool:
            return "Deposits are not open right now."
        return (
            f"📥 Send {self._config.assets.native.symbol} or {self._config.assets.stable.symbol} to:\n"
            f"{pool}\n"
            f"from your registered address {account.address}. "
            f"Credited after {self._config.chain.confirmations} confirmations."
        )

    async def _cmd_history(self, username: str, channel: str, args: list[str]) -> str:
        """Show recent ledger entries."""
        limit = 10
        if args:
            try:
                limit = min(25, max(1, int(args[0])))
            except ValueError:
                pass

        entries = await self._db.get_recent_entries(normalize_user_id(username), limit)
        if not entries:
            return "No history yet."

        lines = [f"📜 Last {len(entries)} entries:", "━" * 15]
        for e in entries:
            sign = "+" if e["amount"] > 0 else ""
            symbol = getattr(self._config.assets, e["asset"]).symbol
            ts = str(e["created_at"])[:16].replace("T", " ")
            lines.append(f"{sign}{fmt(e['amount'])} {symbol}  {e['entry_type']}")
            lines.append(f"  {ts}")
        return "\n".join(lines)

    # ══════════════════════════════════════════════════════════
    #  Wagers
    # ══════════════════════════════════════════════════════════

    async def _cmd_bet(self, username: str, channel: str, args: list[str]) -> str:
        stake = parse_decimal(args[0]) if args else None
        if stake is None:
            stakes = ", ".join(fmt(s) for s in self._wagers.allowed_stakes)
            return f"Usage: bet <stake>  ({stakes})"

        user_id = normalize_user_id(username)
        result = await self._wagers.place_wager(user_id, stake)
        symbol = self._config.assets.stable.symbol
        if not result.ok:
            return f"❌ {ERROR_TEXT.get(result.error_kind, result.error)}"

        if result.status is WagerStatus.WON:
            lines = [f"🎉 You won {fmt(result.payout)} {symbol}!"]
        elif result.status is WagerStatus.WON_CAPPED:
            lines = [
                f"🎉 You won, but the pool could only pay {fmt(result.payout)} {symbol}.",
                f"The remaining {fmt(result.shortfall)} {symbol} has been flagged for the operator.",
            ]
        else:
            lines = [f"😞 You lost {fmt(result.stake)} {symbol}."]
        lines.append(f"Balance: {fmt(result.account_balance)} {symbol}")
        lines.extend(self._progression_lines(result.progression))

        if result.won and self._jackpot.can_offer(result.account_balance):
            self._sessions.apply(user_id, JackpotOffered(), time.monotonic())
            lines.append(
                f"🎰 Risk {fmt(self._jackpot.stake)} {symbol} on the jackpot "
                f"(pool {fmt(result.pool_balance)} {symbol})? Reply yes or no.",
            )
        return "\n".join(lines)

    async def _cmd_jackpot(self, username: str, channel: str, args: list[str]) -> str:
        if not self._config.jackpot.enabled:
            return f"❌ {ERROR_TEXT[ErrorKind.DISABLED]}"
        symbol = self._config.assets.stable.symbol
        pool = await self._db.get_pool()
        self._sessions.apply(normalize_user_id(username), JackpotOffered(), time.monotonic())
        return (
            f"🎰 Jackpot: stake {fmt(self._jackpot.stake)} {symbol} to win the whole pool "
            f"({fmt(pool)} {symbol}). Reply yes or no."
        )

    async def _place_jackpot(self, user_id: str) -> str:
        result = await self._jackpot.place_jackpot(user_id)
        symbol = self._config.assets.stable.symbol
        if not result.ok:
            return f"❌ {ERROR_TEXT.get(result.error_kind, result.error)}"
        if result.status is JackpotStatus.WON:
            lines = [f"💎 JACKPOT! You won {fmt(result.payout)} {symbol}!"]
        elif result.status is JackpotStatus.UNFUNDED:
            lines = ["🎰 You hit the jackpot, but the pool was empty. No payout this time."]
        else:
            lines = [f"😞 No jackpot. You lost {fmt(result.stake)} {symbol}."]
        lines.append(f"Balance: {fmt(result.account_balance)} {symbol}")
        lines.extend(self._progression_lines(result.progression))
        return "\n".join(lines)

    # ══════════════════════════════════════════════════════════
    #  Confirmations
    # ══════════════════════════════════════════════════════════

    async def _cmd_yes(self, username: str, channel: str, args: list[str]) -> str:
        user_id = normalize_user_id(username)
        effect = self._sessions.apply(user_id, Confirm(), time.monotonic())
        if isinstance(effect, PlaceJackpot):
            return await self._place_jackpot(user_id)
        if isinstance(effect, ExecuteWithdrawal):
            return await self._execute_withdrawal(user_id, effect.asset, effect.amount)
        return "Nothing to confirm."

    async def _cmd_no(self, username: str, channel: str, args: list[str]) -> str:
        effect = self._sessions.apply(normalize_user_id(username), Decline(), time.monotonic())
        if isinstance(effect, Cancelled):
            if effect.state is SessionState.WITHDRAW_PENDING:
                return "Withdrawal cancelled."
            return "Jackpot declined."
        return "Nothing to cancel."

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def _cmd_withdraw(self, username: str, channel: str, args: list[str]) -> str:
        usage = "Usage: withdraw <eth|usdc> <amount>"
        if len(args) < 2:
            return usage
        try:
            asset = Asset.parse(args[0])
        except ValueError:
            return usage
        amount = parse_decimal(args[1])
        if amount is None or amount <= 0:
            return f"❌ {ERROR_TEXT[ErrorKind.INVALID_AMOUNT]}"

        account = await self._db.get_account(normalize_user_id(username))
        if account is None:
            return ERROR_TEXT[ErrorKind.NOT_REGISTERED]

        payout, fee = self._withdrawals.split_fee(asset, amount)
        symbol = getattr(self._config.assets, asset.value).symbol
        self._sessions.apply(
            account.user_id, WithdrawRequested(asset=asset, amount=amount), time.monotonic(),
        )
        return (
            f"📤 Withdraw {fmt(amount)} {symbol} to {account.address}?\n"
            f"You receive {fmt(payout)} {symbol} (fee {fmt(fee)}). Reply yes or no."
        )

    async def _execute_withdrawal(self, user_id: str, asset: Asset, amount: Decimal) -> str:
        result = await self._withdrawals.withdraw(user_id, asset, amount)
        symbol = getattr(self._config.assets, asset.value).symbol
        if result.ok:
            return (
                f"✅ Sent {fmt(result.payout)} {symbol}.\n"
                f"Reference: {result.payout_reference}"
            )
        if result.error_kind is ErrorKind.TRANSFER_DISPATCH_FAILED:
            return (
                f"⚠️ Your withdrawal #{result.withdrawal_id} was debited but the transfer "
                "could not be sent. An operator will complete it manually."
            )
        return f"❌ {ERROR_TEXT.get(result.error_kind, result.error)}"

    # ══════════════════════════════════════════════════════════
    #  Progress & stats
    # ══════════════════════════════════════════════════════════

    def _progression_lines(self, progression: ProgressionResult | None) -> list[str]:
        if progression is None or not progression.leveled_up:
            return []
        lines = [f"⭐ Level up! You are now level {progression.new_level} "
                 f"({badge_for_level(progression.new_level)})."]
        reward = self._config.progression.level_reward
        symbol = self._config.assets.stable.symbol
        for level in progression.rewards_granted:
            lines.append(f"🎁 Level {level} reward: {fmt(Decimal(str(reward)))} {symbol}")
        return lines

    async def _cmd_level(self, username: str, channel: str, args: list[str]) -> str:
        account = await self._db.get_account(normalize_user_id(username))
        if account is None:
            return ERROR_TEXT[ErrorKind.NOT_REGISTERED]
        needed = self._progression.threshold(account.level)
        return "\n".join([
            f"⭐ Level {account.level} ({badge_for_level(account.level)})",
            f"XP: {account.xp}/{needed}",
            f"Wagers: {account.total_wagers} · Wins: {account.wins} ({account.win_rate:.1f}%)",
            f"Login streak: {account.login_streak} day(s)",
        ])

    async def _cmd_pool(self, username: str, channel: str, args: list[str]) -> str:
        pool = await self._db.get_pool()
        return f"🏦 Jackpot pool: {fmt(pool)} {self._config.assets.stable.symbol}"

    async def _cmd_top(self, username: str, channel: str, args: list[str]) -> str:
        """Show leaderboards."""
        criteria = args[0].lower() if args else "balances"
        if criteria not in LEADERBOARD_CRITERIA:
            return "Usage: top <category>\nCategories: " + ", ".join(LEADERBOARD_CRITERIA)

        accounts = await self._db.get_top_accounts(criteria, limit=10)
        if not accounts:
            return "No entries yet."

        symbol = self._config.assets.stable.symbol
        titles = {
            "balances": "💰 Top Balances",
            "winners": "🏆 Top Winners",
            "bettors": "🎲 Most Wagers",
            "winrates": f"📈 Best Win Rate (min {MIN_WAGERS_FOR_WINRATE} wagers)",
        }
        lines = [titles[criteria], "━" * 15]
        for i, a in enumerate(accounts, 1):
            medal = "🥇🥈🥉"[i - 1] if i <= 3 else f"{i}."
            name = a.username or a.user_id
            match criteria:
                case "balances":
                    value = f"{fmt(a.balance(POOL_ASSET))} {symbol}"
                case "winners":
                    value = f"{fmt(a.total_won)} {symbol}"
                case "bettors":
                    value = f"{a.total_wagers} wagers"
                case _:
                    value = f"{a.win_rate:.1f}%"
            lines.append(f"  {medal} {name} — {value}")
        return "\n".join(lines)

    # ──────────────────────────────────────────────────────────
    #  PM delivery with auto-split
    # ──────────────────────────────────────────────────────────

    _PM_MAX_LEN: int = 240  # CyTube single-message character limit
    _PM_SEND_INTERVAL: float = 2.0  # seconds between outbound PMs
    _HOUSEKEEPING_INTERVAL: float = 60.0

    def start_pm_worker(self) -> None:
        """Start the background PM delivery worker."""
        if self._pm_worker_task is None or self._pm_worker_task.done():
            self._pm_worker_task = asyncio.create_task(self._pm_worker())

    async def stop_pm_worker(self) -> None:
        """Drain remaining PMs and stop the worker."""
        if self._pm_worker_task and not self._pm_worker_task.done():
            self._pm_worker_task.cancel()
            try:
                await self._pm_worker_task
            except asyncio.CancelledError:
                pass
            self._pm_worker_task = None

    async def _pm_worker(self) -> None:
        """Background loop: send queued PMs with a pause between each."""
        try:
            while True:
                channel, username, chunk = await self._pm_queue.get()
                try:
                    if self._client is not None:
                        await self._client.send_pm(channel, username, chunk)
                except Exception:
                    self._logger.exception("PM worker failed to send to %s", username)
                finally:
                    self._pm_queue.task_done()
                await asyncio.sleep(self._PM_SEND_INTERVAL)
        except asyncio.CancelledError:
            while not self._pm_queue.empty():
                channel, username, chunk = self._pm_queue.get_nowait()
                try:
                    if self._client is not None:
                        await self._client.send_pm(channel, username, chunk)
                except Exception:
                    self._logger.exception("PM worker (drain) failed for %s", username)
                self._pm_queue.task_done()

    def _split_message(self, message: str) -> list[str]:
        """Split a long PM at line boundaries into chunks of at most _PM_MAX_LEN."""
        limit = self._PM_MAX_LEN
        if len(message) <= limit:
            return [message]

        chunks: list[str] = []
        current: list[str] = []
        current_len = 0
        for line in message.split("\n"):
            added_len = len(line) + (1 if current else 0)
            if current and current_len + added_len > limit:
                chunks.append("\n".join(current))
                current = [line]
                current_len = len(line)
            else:
                current.append(line)
                current_len += added_len
        if current:
            chunks.append("\n".join(current))
        return chunks

    async def _send_pm(self, channel: str, username: str, message: str) -> None:
        """Enqueue a PM for throttled delivery, or send directly if no worker runs."""
        if self._client is None:
            return
        chunks = self._split_message(message)
        if self._pm_worker_task and not self._pm_worker_task.done():
            for chunk in chunks:
                await self._pm_queue.put((channel, username, chunk))
        else:
            for chunk in chunks:
                try:
                    await self._client.send_pm(channel, username, chunk)
                except Exception:
                    self._logger.exception("Failed to send PM to %s", username)
