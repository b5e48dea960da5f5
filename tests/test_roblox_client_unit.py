import requests

from petbot.domain.models import Bot
from petbot.platform.roblox import RobloxClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code}")


class FakeSession:
    """Routes requests by URL suffix; records every call."""

    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.calls = []

    def _dispatch(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for suffix, response in self.routes.items():
            if url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404)

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)


SEARCH = FakeResponse(payload={"data": [{"id": 111, "name": "Seller_One"}, {"id": 222, "name": "SellerOne"}]})
BOT = Bot(id="bot_ps99_01", game_id="8737899170", user_id="1234567890", username="StarPetsBot01", cookie="cookie-value")


def _client(routes):
    session = FakeSession(routes)
    return RobloxClient(session=session), session


def test_get_user_id_exact_case_insensitive_match():
    client, session = _client({"/v1/users/search": SEARCH})
    assert client.get_user_id("sellerone") == "222"
    _, _, kwargs = session.calls[0]
    assert kwargs["params"] == {"keyword": "sellerone", "limit": 10}
    assert session.headers["User-Agent"] == "PetBot/1.0"


def test_get_user_id_no_match_or_error():
    client, _ = _client({"/v1/users/search": SEARCH})
    assert client.get_user_id("nobody") is None
    client, _ = _client({"/v1/users/search": requests.ConnectionError("down")})
    assert client.get_user_id("sellerone") is None


def test_send_friend_request_success_uses_csrf_token():
    client, session = _client(
        {
            "/v1/users/search": SEARCH,
            "/v2/logout": FakeResponse(403, headers={"x-csrf-token": "tok"}),
            "/v1/users/222/request-friendship": FakeResponse(200, payload={"success": True}),
        }
    )
    assert client.send_friend_request(BOT, "SellerOne") is True
    method, url, kwargs = session.calls[-1]
    assert method == "POST"
    assert kwargs["headers"]["X-CSRF-TOKEN"] == "tok"
    assert kwargs["headers"]["Cookie"] == ".ROBLOSECURITY=cookie-value"


def test_send_friend_request_failures_return_false():
    no_cookie = Bot(id="b", game_id="1", user_id="1", username="NoCookie")
    client, session = _client({})
    assert client.send_friend_request(no_cookie, "SellerOne") is False
    assert session.calls == []

    client, _ = _client({"/v1/users/search": SEARCH, "/v2/logout": FakeResponse(403)})
    assert client.send_friend_request(BOT, "SellerOne") is False

    client, _ = _client(
        {
            "/v1/users/search": SEARCH,
            "/v2/logout": FakeResponse(403, headers={"x-csrf-token": "tok"}),
            "/v1/users/222/request-friendship": FakeResponse(429, text="TooManyRequests"),
        }
    )
    assert client.send_friend_request(BOT, "SellerOne") is False


def test_check_friendship_status_mapping():
    for platform_status, expected in (("Friends", "accepted"), ("RequestSent", "pending"), ("NotFriends", "none")):
        client, session = _client(
            {
                "/v1/users/search": SEARCH,
                "/friends/statuses": FakeResponse(payload={"data": [{"id": 222, "status": platform_status}]}),
            }
        )
        assert client.check_friendship_status(BOT, "SellerOne") == expected
        _, url, kwargs = session.calls[-1]
        assert "/v1/users/1234567890/friends/statuses" in url
        assert kwargs["params"] == {"userIds": "222"}


def test_check_friendship_status_degrades_to_none():
    client, _ = _client({"/v1/users/search": SEARCH, "/friends/statuses": FakeResponse(500)})
    assert client.check_friendship_status(BOT, "SellerOne") == "none"
    client, _ = _client({"/v1/users/search": SEARCH, "/friends/statuses": FakeResponse(payload={"data": []})})
    assert client.check_friendship_status(BOT, "SellerOne") == "none"
    client, _ = _client({"/v1/users/search": SEARCH})
    assert client.check_friendship_status(BOT, "ghost") == "none"
