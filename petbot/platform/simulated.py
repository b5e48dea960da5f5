from __future__ import annotations

import logging
import threading

from petbot.domain.models import Bot

logger = logging.getLogger(__name__)


class SimulatedPlatform:
    """
    In-process stand-in for the game platform.

    Friend requests always succeed; a request reads as "pending" until it has
    been polled `accept_after_polls` times, then "accepted".
    """

    def __init__(self, accept_after_polls: int = 1, fail_usernames: set[str] | None = None):
        self.accept_after_polls = max(0, int(accept_after_polls))
        self.fail_usernames = {u.lower() for u in (fail_usernames or set())}
        self._lock = threading.Lock()
        self._polls: dict[tuple[str, str], int] = {}

    def send_friend_request(self, bot: Bot, target_username: str) -> bool:
        if target_username.lower() in self.fail_usernames:
            logger.warning("Simulated friend request from %s to %s failed", bot.username, target_username)
            return False
        with self._lock:
            self._polls[(bot.user_id, target_username.lower())] = 0
        logger.info("Simulated friend request from %s to %s", bot.username, target_username)
        return True

    def check_friendship_status(self, bot: Bot, target_username: str) -> str:
        key = (bot.user_id, target_username.lower())
        with self._lock:
            if key not in self._polls:
                return "none"
            self._polls[key] += 1
            return "accepted" if self._polls[key] >= self.accept_after_polls else "pending"
