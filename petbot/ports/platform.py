from __future__ import annotations

from typing import Literal, Protocol

from petbot.domain.models import Bot

FriendshipStatus = Literal["accepted", "pending", "none"]


class FriendshipPort(Protocol):
    def send_friend_request(self, bot: Bot, target_username: str) -> bool: ...

    def check_friendship_status(self, bot: Bot, target_username: str) -> FriendshipStatus: ...
