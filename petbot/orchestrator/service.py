from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
import time
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Any, Awaitable, Callable
from uuid import uuid4

from petbot.bots.registry import BotRegistry
from petbot.domain.models import CUSTODY, TRADE, Bot, CustodyRequest, TradeRequest, utcnow
from petbot.orchestrator import state_machine
from petbot.orchestrator.state_machine import FAILED, InvalidTransition
from petbot.orchestrator.store import BotRequest, RequestStore
from petbot.ports.platform import FriendshipPort
from petbot.utils import database
from petbot.utils.config_loader import OrchestratorSettings

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class ValidationError(Exception):
    """Raised when an initiation payload is missing required data."""


class RequestNotFound(Exception):
    """Raised when a trade/custody id is unknown."""


class DuplicateRequest(Exception):
    """Raised when a client-supplied trade id is already in use."""


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def _require(payload: dict[str, Any], keys: list[str], what: str) -> None:
    missing = [k for k in keys if not payload.get(k)]
    if missing:
        raise ValidationError(f"Missing required {what} data: {', '.join(missing)}")


def _parse_price(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("price must be a number")
    try:
        price = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("price must be a number") from e
    if not math.isfinite(price) or price < 0:
        raise ValidationError("price must be a non-negative number")
    return price


class Orchestrator:
    """
    Drives trade and custody requests through their status flows.

    Must be used from a running event loop. Every delayed step is an asyncio task
    owned by the request it belongs to; reaching a terminal status cancels the
    request's remaining tasks and returns the bot's load slot.
    """

    def __init__(
        self,
        registry: BotRegistry,
        store: RequestStore,
        platform: FriendshipPort,
        settings: OrchestratorSettings,
        *,
        record_events: bool = True,
    ) -> None:
        self.registry = registry
        self.store = store
        self.platform = platform
        self.settings = settings
        self.record_events = record_events

        self._tasks: dict[str, set[asyncio.Task]] = {}
        # Platform clients are blocking (requests); keep them off the event loop.
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="platform")
        # SQLite work (event log, startup scan) runs on one ordered worker, never on the loop.
        self._db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="db_write")

    # -------------------
    # Lifecycle
    # -------------------

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self.record_events:
            await loop.run_in_executor(self._db_executor, database.init_db)
        # Timers died with the previous process; nothing can move these requests forward.
        stale = await loop.run_in_executor(self._db_executor, self.store.non_terminal)
        for request in stale:
            self._transition(request, FAILED, reason="interrupted by restart", release=False)

    async def stop(self) -> None:
        tasks = [t for ts in self._tasks.values() for t in ts]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._executor.shutdown(wait=False)
        # Queued after every pending event write, so both logs are on disk when this returns.
        await asyncio.get_running_loop().run_in_executor(self._db_executor, self.store.flush)

    def pending_tasks(self, request_id: str) -> int:
        return len(self._tasks.get(request_id, ()))

    # -------------------
    # Trade flow
    # -------------------

    def initiate_trade(self, payload: dict[str, Any]) -> dict[str, Any]:
        _require(payload, ["buyerId", "buyerRobloxUsername", "petId", "gameId"], "trade")

        trade_id = str(payload.get("id") or f"trade_{int(time.time() * 1000)}_{uuid4().hex[:9]}")
        if self.store.get(trade_id) is not None:
            raise DuplicateRequest(f"Trade {trade_id} already exists")

        price = _parse_price(payload.get("price"))

        bot = self.registry.acquire(str(payload["gameId"]))
        try:
            trade = TradeRequest(
                id=trade_id,
                buyer_id=str(payload["buyerId"]),
                buyer_username=str(payload["buyerRobloxUsername"]),
                pet_id=str(payload["petId"]),
                game_id=str(payload["gameId"]),
                bot_id=bot.id,
                bot_username=bot.username,
                bot_user_id=bot.user_id,
                access_code=str(payload.get("accessCode") or f"TRADE_{_base36(int(time.time() * 1000)).upper()}"),
                seller_id=payload.get("sellerId"),
                pet_name=payload.get("petName"),
                price=price,
            )
            self.store.put(trade)
            self._schedule(trade.id, self._trade_handshake(trade.id))
            self._schedule(trade.id, self._friend_timeout_watchdog(trade.id))
        except Exception:
            self.registry.release(bot.id)
            raise

        self._record(trade, "Bot trade initiated")
        return {"success": True, "trade": trade.to_dict(), "botInfo": bot.info()}

    def send_friend_request(self, trade_id: str) -> dict[str, Any]:
        trade = self._get(trade_id, TRADE)
        self._transition(trade, "friend_request_sent", forced=True)
        logger.info("Manual friend request sent: %s", trade_id)
        return {"success": True, "message": "Friend request sent"}

    def get_trade(self, trade_id: str) -> dict[str, Any]:
        return self._get(trade_id, TRADE).to_dict()

    def join_server(self, trade_id: str, server_id: str | None = None) -> dict[str, Any]:
        trade = self._get(trade_id, TRADE)
        self._transition(trade, "in_game", forced=True, game_server_id=server_id)
        logger.info("Bot joining server: %s (server=%s)", trade_id, server_id)
        self._schedule(trade.id, self._trade_delivery(trade.id))
        return {"success": True, "message": "Bot joining server"}

    def execute_trade(self, trade_id: str) -> dict[str, Any]:
        trade = self._get(trade_id, TRADE)
        self._transition(trade, "completed", forced=True)
        return {"success": True, "message": "Trade completed"}

    def buyer_instructions(self, trade_id: str) -> list[str]:
        trade = self._get(trade_id, TRADE)
        return self.registry.buyer_instructions(trade)

    async def _trade_handshake(self, trade_id: str) -> None:
        # Simulated: the trade bot's friend request and its acceptance are fixed delays.
        await asyncio.sleep(self.settings.friend_request_delay)
        self._advance(trade_id, "friend_request_sent")
        await asyncio.sleep(self.settings.trade_friend_accept_delay)
        self._advance(trade_id, "friend_accepted")

    async def _trade_delivery(self, trade_id: str) -> None:
        await asyncio.sleep(self.settings.join_delay)
        self._advance(trade_id, "trading")
        await asyncio.sleep(self.settings.trade_delay)
        self._advance(trade_id, "completed")

    # -------------------
    # Custody flow
    # -------------------

    def initiate_custody(self, payload: dict[str, Any]) -> dict[str, Any]:
        _require(payload, ["sellerId", "sellerRobloxUsername", "petData"], "custody")
        if not isinstance(payload["petData"], dict):
            raise ValidationError("petData must be an object")

        game_id = str(payload.get("gameId") or self.settings.default_game_id)
        bot = self.registry.acquire(game_id)
        try:
            custody = CustodyRequest(
                id=f"custody_{int(time.time() * 1000)}_{uuid4().hex[:9]}",
                seller_id=str(payload["sellerId"]),
                seller_username=str(payload["sellerRobloxUsername"]),
                pet_data=dict(payload["petData"]),
                game_id=game_id,
                bot_id=bot.id,
                bot_username=bot.username,
                bot_user_id=bot.user_id,
            )
            self.store.put(custody)
            self._schedule(custody.id, self._custody_handshake(custody.id))
            self._schedule(custody.id, self._friend_timeout_watchdog(custody.id))
        except Exception:
            self.registry.release(bot.id)
            raise

        self._record(custody, "Pet custody initiated")
        return {"success": True, "custodyId": custody.id, "botInfo": bot.info()}

    def get_custody(self, custody_id: str) -> dict[str, Any]:
        return self._get(custody_id, CUSTODY).to_dict()

    async def _custody_handshake(self, custody_id: str) -> None:
        await asyncio.sleep(self.settings.friend_request_delay)
        custody = self._get(custody_id, CUSTODY)
        bot = self._bot_for(custody)

        try:
            sent = await self._call_platform(self.platform.send_friend_request, bot, custody.seller_username)
        except Exception as e:
            logger.error("Error sending friend request for %s: %s", custody_id, e)
            self._advance(custody_id, FAILED, reason=f"friend request error: {type(e).__name__}")
            return

        if not sent:
            self._advance(custody_id, FAILED, reason="friend request was not sent")
            return
        if not self._advance(custody_id, "friend_request_sent"):
            return

        await self._monitor_friendship(custody_id, bot, custody.seller_username)

        await asyncio.sleep(self.settings.pet_receive_delay)
        self._advance(custody_id, "pet_received")
        await asyncio.sleep(self.settings.custody_verify_delay)
        self._advance(custody_id, "custody_complete")

    async def _monitor_friendship(self, custody_id: str, bot: Bot, username: str) -> None:
        """Poll the platform until the seller accepts; the watchdog bounds how long."""
        while True:
            await asyncio.sleep(self.settings.friendship_poll_interval)
            try:
                status = await self._call_platform(self.platform.check_friendship_status, bot, username)
            except Exception as e:
                logger.error("Error monitoring friendship for %s: %s", custody_id, e)
                continue
            if status == "accepted":
                self._advance(custody_id, "friend_accepted")
                return

    async def _call_platform(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args))

    # -------------------
    # Shared
    # -------------------

    async def _friend_timeout_watchdog(self, request_id: str) -> None:
        await asyncio.sleep(self.settings.friend_timeout)
        request = self.store.get(request_id)
        if request is None or state_machine.is_terminal(request.kind, request.status):
            return
        if not state_machine.has_reached(request.kind, request.status, "friend_accepted"):
            logger.error("Friend request timeout: %s", request_id)
            self._transition(request, FAILED, reason="friend request timed out")

    def _get(self, request_id: str, kind: str) -> BotRequest:
        request = self.store.get(request_id)
        if request is None or request.kind != kind:
            label = "Trade" if kind == TRADE else "Custody request"
            raise RequestNotFound(f"{label} not found")
        return request

    def _bot_for(self, request: BotRequest) -> Bot:
        bot = self.registry.get_bot(request.bot_id)
        if bot is None:
            raise RuntimeError(f"Bot {request.bot_id} is not in the registry")
        return bot

    def _advance(self, request_id: str, target: str, **fields: Any) -> bool:
        """Timer-driven transition; a request that already moved on is left alone."""
        request = self.store.get(request_id)
        if request is None:
            return False
        try:
            self._transition(request, target, **fields)
            return True
        except InvalidTransition as e:
            logger.debug("Skipping %s -> %s: %s", request_id, target, e)
            return False

    def _transition(
        self,
        request: BotRequest,
        target: str,
        *,
        forced: bool = False,
        reason: str | None = None,
        release: bool = True,
        game_server_id: str | None = None,
    ) -> None:
        kind = request.kind
        previous = request.status
        if forced:
            new_status = state_machine.force(kind, previous, target)
        else:
            new_status = state_machine.advance(kind, previous, target)

        request.status = new_status
        request.updated_at = utcnow()
        if reason:
            request.failure_reason = reason
        if game_server_id is not None and isinstance(request, TradeRequest):
            request.game_server_id = game_server_id

        terminal = state_machine.is_terminal(kind, new_status)
        if terminal and new_status != FAILED:
            request.completed_at = request.updated_at
        self.store.put(request)

        msg = f"{kind} {previous} -> {new_status}"
        if reason:
            msg += f" ({reason})"
        self._record(request, msg, level="ERROR" if new_status == FAILED else "INFO")

        if terminal:
            if release:
                self.registry.release(request.bot_id)
            self._cancel_tasks(request.id)

    def _record(self, request: BotRequest, message: str, level: str = "INFO") -> None:
        logger.log(logging.ERROR if level == "ERROR" else logging.INFO, "%s [%s]", message, request.id)
        if not self.record_events:
            return
        future = self._db_executor.submit(
            database.log_event, level, message, request_id=request.id, kind=request.kind, status=request.status
        )
        future.add_done_callback(partial(self._event_written, request.id))

    def _event_written(self, request_id: str, future: Future) -> None:
        exc = future.exception()
        if isinstance(exc, sqlite3.Error):
            logger.warning("Failed to record event for %s: %s", request_id, exc)
        elif exc is not None:
            logger.error("Event write for %s failed: %s: %s", request_id, type(exc).__name__, exc)

    def _schedule(self, request_id: str, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.setdefault(request_id, set()).add(task)
        task.add_done_callback(partial(self._task_done, request_id))
        return task

    def _task_done(self, request_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(request_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(request_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background step for %s failed: %s: %s", request_id, type(exc).__name__, exc)

    def _cancel_tasks(self, request_id: str) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks.get(request_id, ())):
            if task is not current:
                task.cancel()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
        return True
    except RuntimeError:
        return False
