"""Request-reply command handler on kryten.ledger.command.

Provides a NATS request-reply API for inter-service callers, admin tooling
and external chain watchers (``deposit.notify``). Amounts travel as strings.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import __version__
from .database import LEADERBOARD_CRITERIA
from .errors import ErrorKind, InvalidAmount, LedgerError
from .models import Asset, DepositEvent
from .utils import normalize_user_id, parse_decimal

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .main import LedgerApp

SUBJECT = "kryten.ledger.command"
SERVICE = "ledger"


class CommandFailed(Exception):
    """An engine returned a structured failure for this command."""

    def __init__(self, kind: ErrorKind, message: str, data: dict | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.data = data


def _require(request: dict[str, Any], *fields: str) -> list[Any]:
    missing = [f for f in fields if request.get(f) in (None, "")]
    if missing:
        raise ValueError(f"{', '.join(missing)} required")
    return [request[f] for f in fields]


def _amount(value: Any):
    amount = parse_decimal(value)
    if amount is None:
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    return amount


def _check(result) -> dict[str, Any]:
    """Return the result payload, or raise CommandFailed for a rejected result."""
    data = result.to_dict()
    if not result.ok:
        raise CommandFailed(result.error_kind, result.error or "rejected", data)
    return data


class CommandHandler:
    """Handles request-reply commands on kryten.ledger.command."""

    def __init__(
        self,
        app: LedgerApp,
        client: KrytenClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._client = client
        self._logger = logger or logging.getLogger("ledger.command")

    async def connect(self) -> None:
        """Subscribe to request-reply on kryten.ledger.command."""
        await self._client.subscribe_request_reply(SUBJECT, self._handle_command)

    async def _handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route a command request to the appropriate handler."""
        command = request.get("command", "")
        handler = self._HANDLER_MAP.get(command)

        if not handler:
            return self._failure(command, f"Unknown command: {command}", "unknown_command")

        try:
            result = await handler(self, request)
        except CommandFailed as e:
            reply = self._failure(command, str(e), e.kind.value)
            if e.data is not None:
                reply["data"] = e.data
            return reply
        except LedgerError as e:
            return self._failure(command, str(e), e.kind.value)
        except ValueError as e:
            return self._failure(command, str(e), "invalid_request")
        except Exception as e:
            self._logger.exception("Command handler error for %s", command)
            return self._failure(command, str(e), "internal")

        self._app.commands_processed += 1
        return {
            "service": SERVICE,
            "command": command,
            "success": True,
            "data": result,
        }

    @staticmethod
    def _failure(command: str, error: str, kind: str) -> dict[str, Any]:
        return {
            "service": SERVICE,
            "command": command,
            "success": False,
            "error": error,
            "error_kind": kind,
        }

    # ══════════════════════════════════════════════════════════
    #  System
    # ══════════════════════════════════════════════════════════

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    async def _handle_health(self, request: dict[str, Any]) -> dict[str, Any]:
        watcher = self._app.deposit_watcher
        return {
            "status": "healthy",
            "database": "connected" if self._app.db else "disconnected",
            "active_sessions": self._app.pm_handler.active_sessions if self._app.pm_handler else 0,
            "last_scanned_block": watcher.last_scanned_block if watcher else None,
            "uptime_seconds": self._app.uptime_seconds,
        }

    # ══════════════════════════════════════════════════════════
    #  Accounts
    # ══════════════════════════════════════════════════════════

    async def _handle_account_get(self, request: dict[str, Any]) -> dict[str, Any]:
        (user_id,) = _require(request, "user_id")
        account = await self._app.db.get_account(normalize_user_id(user_id))
        if account is None:
            return {"found": False}
        return {"found": True, **account.to_dict()}

    async def _handle_account_register(self, request: dict[str, Any]) -> dict[str, Any]:
        user_id, address = _require(request, "user_id", "address")
        account = await self._app.db.upsert_account(
            normalize_user_id(user_id), address, username=request.get("username"),
        )
        return account.to_dict()

    # ══════════════════════════════════════════════════════════
    #  Wagers
    # ══════════════════════════════════════════════════════════

    async def _handle_wager_place(self, request: dict[str, Any]) -> dict[str, Any]:
        user_id, stake = _require(request, "user_id", "stake")
        result = await self._app.wager_engine.place_wager(
            normalize_user_id(user_id), _amount(stake),
        )
        return _check(result)

    async def _handle_jackpot_place(self, request: dict[str, Any]) -> dict[str, Any]:
        (user_id,) = _require(request, "user_id")
        result = await self._app.jackpot.place_jackpot(normalize_user_id(user_id))
        return _check(result)

    async def _handle_pool_get(self, request: dict[str, Any]) -> dict[str, Any]:
        state = await self._app.db.get_pool_state()
        return {k: str(v) for k, v in state.items()}

    async def _handle_leaderboard_get(self, request: dict[str, Any]) -> dict[str, Any]:
        criteria = request.get("criteria", "balances")
        if criteria not in LEADERBOARD_CRITERIA:
            raise ValueError(f"criteria must be one of {', '.join(LEADERBOARD_CRITERIA)}")
        limit = int(request.get("limit", 10))
        accounts = await self._app.db.get_top_accounts(criteria, limit=limit)
        return {"criteria": criteria, "entries": [a.to_dict() for a in accounts]}

    # ══════════════════════════════════════════════════════════
    #  Deposits & Withdrawals
    # ══════════════════════════════════════════════════════════

    async def _handle_withdraw_request(self, request: dict[str, Any]) -> dict[str, Any]:
        user_id, asset, amount = _require(request, "user_id", "asset", "amount")
        result = await self._app.withdrawals.withdraw(
            normalize_user_id(user_id), Asset.parse(asset), _amount(amount),
        )
        return _check(result)

    async def _handle_deposit_notify(self, request: dict[str, Any]) -> dict[str, Any]:
        from_address, asset, amount, block_number, tx_hash = _require(
            request, "from_address", "asset", "amount", "block_number", "tx_hash",
        )
        event = DepositEvent(
            from_address=from_address,
            asset=Asset.parse(asset),
            amount=_amount(amount),
            block_number=int(block_number),
            tx_hash=tx_hash,
            log_index=int(request.get("log_index", -1)),
        )
        result = await self._app.reconciler.reconcile(event)
        return result.to_dict()

    async def _handle_withdrawals_incidents(self, request: dict[str, Any]) -> dict[str, Any]:
        limit = int(request.get("limit", 50))
        incidents = await self._app.db.get_withdrawals_by_status("incident", limit)
        return {"incidents": [w.to_dict() for w in incidents]}

    async def _handle_deposits_unmatched(self, request: dict[str, Any]) -> dict[str, Any]:
        limit = int(request.get("limit", 50))
        return {"deposits": await self._app.db.get_unmatched_deposits(limit)}

    _HANDLER_MAP: dict[str, Any] = {
        "system.ping": _handle_ping,
        "system.health": _handle_health,
        "account.get": _handle_account_get,
        "account.register": _handle_account_register,
        "wager.place": _handle_wager_place,
        "jackpot.place": _handle_jackpot_place,
        "withdraw.request": _handle_withdraw_request,
        "deposit.notify": _handle_deposit_notify,
        "pool.get": _handle_pool_get,
        "leaderboard.get": _handle_leaderboard_get,
        "withdrawals.incidents": _handle_withdrawals_incidents,
        "deposits.unmatched": _handle_deposits_unmatched,
    }
