from __future__ import annotations

import logging
import math
import os
import threading
from typing import Any

from petbot.domain.models import Bot, TradeRequest

logger = logging.getLogger(__name__)

# Estimate 2-5 minutes per trade depending on load.
_BASE_WAIT_MINUTES = 2
_WAIT_PER_ACTIVE_TRADE = 0.5
_MAX_LOAD_PENALTY = 3


class NoBotAvailable(Exception):
    """Raised when no bot for a game is online and under capacity."""


class BotRegistry:
    """
    Static bot identities per external game id.

    Only the load counters change at runtime. `acquire`/`release` are the sole
    mutators and take the lock so selection and increment happen together.
    """

    def __init__(self, bots_by_game: dict[str, list[Bot]], game_names: dict[str, str] | None = None):
        self._bots_by_game = {str(g): list(bots) for g, bots in bots_by_game.items()}
        self._game_names = dict(game_names or {})
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> BotRegistry:
        """
        Build the registry from the `games` section.

        Platform credentials can be overridden per bot via env, using the bot's
        `credentials_env` prefix: `<PREFIX>_USER_ID`, `<PREFIX>_USERNAME`, `<PREFIX>_COOKIE`.
        """
        bots_by_game: dict[str, list[Bot]] = {}
        names: dict[str, str] = {}
        for game_id, game in (config.get("games") or {}).items():
            game_id = str(game_id)
            names[game_id] = str((game or {}).get("name") or game_id)
            bots: list[Bot] = []
            for b in (game or {}).get("bots") or []:
                prefix = str(b.get("credentials_env") or "").strip()
                user_id = str(b["user_id"])
                username = str(b["username"])
                cookie = b.get("cookie")
                if prefix:
                    user_id = os.environ.get(f"{prefix}_USER_ID") or user_id
                    username = os.environ.get(f"{prefix}_USERNAME") or username
                    cookie = os.environ.get(f"{prefix}_COOKIE") or cookie
                bots.append(
                    Bot(
                        id=str(b["id"]),
                        game_id=game_id,
                        user_id=user_id,
                        username=username,
                        status=str(b.get("status", "online")),
                        current_trades=int(b.get("current_trades", 0)),
                        max_trades=int(b["max_trades"]),
                        cookie=cookie,
                    )
                )
            bots_by_game[game_id] = bots
        return cls(bots_by_game, names)

    def game_name(self, game_id: str) -> str:
        return self._game_names.get(str(game_id), str(game_id))

    def bots_for_game(self, game_id: str) -> list[Bot]:
        return list(self._bots_by_game.get(str(game_id), []))

    def get_bot(self, bot_id: str) -> Bot | None:
        for bots in self._bots_by_game.values():
            for bot in bots:
                if bot.id == bot_id:
                    return bot
        return None

    def find_available_bot(self, game_id: str) -> Bot | None:
        """Least-loaded online bot under capacity; ties keep registry order."""
        available = [b for b in self._bots_by_game.get(str(game_id), []) if b.is_available()]
        if not available:
            return None
        # sorted() is stable, so equal loads resolve to registry order.
        return sorted(available, key=lambda b: b.current_trades)[0]

    def acquire(self, game_id: str) -> Bot:
        with self._lock:
            bot = self.find_available_bot(game_id)
            if bot is None:
                raise NoBotAvailable(f"No trading bots available for game {game_id}")
            bot.current_trades += 1
            logger.info("Assigned bot %s (load %d/%d)", bot.id, bot.current_trades, bot.max_trades)
            return bot

    def release(self, bot_id: str) -> None:
        with self._lock:
            bot = self.get_bot(bot_id)
            if bot is None:
                logger.warning("release() for unknown bot %s", bot_id)
                return
            bot.current_trades = max(0, bot.current_trades - 1)
            logger.info("Released bot %s (load %d/%d)", bot.id, bot.current_trades, bot.max_trades)

    def estimated_wait_minutes(self, game_id: str) -> int:
        total = sum(b.current_trades for b in self._bots_by_game.get(str(game_id), []))
        penalty = min(total * _WAIT_PER_ACTIVE_TRADE, _MAX_LOAD_PENALTY)
        return int(math.ceil(_BASE_WAIT_MINUTES + penalty))

    def buyer_instructions(self, trade: TradeRequest) -> list[str]:
        bot = self.get_bot(trade.bot_id)
        if bot is None:
            return []
        game = self.game_name(trade.game_id)
        pet = trade.pet_name or "your pet"
        return [
            f"Accept friend request from {bot.username}",
            f"Join any {game} server",
            f"Wait for {bot.username} to join your server",
            f"The bot will automatically trade you {pet}",
            "Trade complete! Enjoy your new pet!",
        ]
