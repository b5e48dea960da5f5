"""Game platform clients (friend requests and friendship status)."""

from __future__ import annotations

from petbot.platform.simulated import SimulatedPlatform
from petbot.ports.platform import FriendshipPort


def build_platform(config: dict) -> FriendshipPort:
    """Pick the platform client from `platform.mode`."""
    p = (config.get("platform") or {}) if isinstance(config, dict) else {}
    mode = str(p.get("mode", "simulated"))
    if mode == "roblox":
        from petbot.platform.roblox import RobloxClient

        return RobloxClient(
            user_agent=str(p.get("user_agent", "PetBot/1.0")),
            timeout=float(p.get("request_timeout_seconds", 10)),
        )
    return SimulatedPlatform(accept_after_polls=int(p.get("simulated_accept_after_polls", 1)))
