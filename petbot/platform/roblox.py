import logging

import requests

from petbot.domain.models import Bot


logger = logging.getLogger(__name__)

USERS_URL = "https://users.roblox.com"
FRIENDS_URL = "https://friends.roblox.com"
AUTH_URL = "https://auth.roblox.com"


class RobloxClient:
    """
    Minimal Roblox web API client used by the custody bots.

    Only what the friendship handshake needs: resolve a username to a user id,
    send a friend request as a bot, and read the friendship status back.
    Every call is best-effort: failures are logged and reported as False / "none"
    so the orchestrator decides what a failure means.
    """

    def __init__(self, user_agent: str = "PetBot/1.0", timeout: float = 10.0, session: requests.Session | None = None):
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def get_user_id(self, username: str) -> str | None:
        """Exact, case-insensitive username match from the search endpoint."""
        try:
            resp = self.session.get(
                f"{USERS_URL}/v1/users/search",
                params={"keyword": username, "limit": 10},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            for user in resp.json().get("data") or []:
                if str(user.get("name") or "").lower() == username.lower():
                    return str(user["id"])
            return None
        except (requests.RequestException, ValueError) as e:
            logger.error("Error getting user id for %s: %s", username, e)
            return None

    def get_csrf_token(self, cookie: str) -> str:
        """Roblox hands out the CSRF token on a rejected logout POST."""
        try:
            resp = self.session.post(
                f"{AUTH_URL}/v2/logout",
                headers={"Cookie": f".ROBLOSECURITY={cookie}"},
                timeout=self.timeout,
            )
            return resp.headers.get("x-csrf-token") or ""
        except requests.RequestException as e:
            logger.error("Error getting CSRF token: %s", e)
            return ""

    def send_friend_request(self, bot: Bot, target_username: str) -> bool:
        if not bot.cookie:
            logger.error("Bot %s has no session cookie configured", bot.username)
            return False

        target_id = self.get_user_id(target_username)
        if not target_id:
            logger.error("Target user not found: %s", target_username)
            return False

        token = self.get_csrf_token(bot.cookie)
        if not token:
            logger.error("Failed to get CSRF token for bot %s", bot.username)
            return False

        try:
            resp = self.session.post(
                f"{FRIENDS_URL}/v1/users/{target_id}/request-friendship",
                headers={
                    "Cookie": f".ROBLOSECURITY={bot.cookie}",
                    "Content-Type": "application/json",
                    "X-CSRF-TOKEN": token,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("Error sending friend request from %s to %s: %s", bot.username, target_username, e)
            return False

        if resp.ok:
            logger.info("Bot %s sent friend request to %s", bot.username, target_username)
            return True
        logger.error("Friend request from %s to %s rejected (%s): %s", bot.username, target_username, resp.status_code, resp.text[:200])
        return False

    def check_friendship_status(self, bot: Bot, target_username: str) -> str:
        target_id = self.get_user_id(target_username)
        if not target_id:
            return "none"
        try:
            resp = self.session.get(
                f"{FRIENDS_URL}/v1/users/{bot.user_id}/friends/statuses",
                params={"userIds": target_id},
                headers={"Cookie": f".ROBLOSECURITY={bot.cookie or ''}"},
                timeout=self.timeout,
            )
            if not resp.ok:
                return "none"
            rows = resp.json().get("data") or []
        except (requests.RequestException, ValueError) as e:
            logger.error("Error checking friendship status for %s: %s", target_username, e)
            return "none"

        status = (rows[0] or {}).get("status") if rows else None
        if status == "Friends":
            return "accepted"
        if status == "RequestSent":
            return "pending"
        return "none"
