import pytest
import requests

from petbot.client.poller import HttpStatusSource, PollerConfig, StatusPoller, load_poller_config


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _feed(*items):
    """fetch() that replays statuses (or raises exceptions) in order, then repeats the last item."""
    items = list(items)

    def fetch():
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return {"id": "t1", "status": item}

    return fetch


def _poller(fetch, kind="trade", config=None, updates=None, clock=None):
    clock = clock or FakeClock()
    return StatusPoller(
        fetch,
        kind=kind,
        config=config or PollerConfig(interval_seconds=3),
        on_update=(lambda step, doc: updates.append(step)) if updates is not None else None,
        sleep=clock.sleep,
        clock=clock.time,
        rng=lambda: 0.5,
    )


def test_fixed_interval_until_completed():
    clock = FakeClock()
    updates: list[str] = []
    fetch = _feed("pending", "friend_request_sent", "friend_accepted", "in_game", "trading", "completed")
    result = _poller(fetch, updates=updates, clock=clock).run()

    assert result.status == "completed"
    assert result.step == "complete"
    assert result.polls == 6
    assert not result.timed_out
    assert clock.sleeps == [3, 3, 3, 3, 3]
    assert updates == ["processing", "friend_request", "join_game", "trading", "trading", "complete"]


def test_failed_status_stops_polling():
    result = _poller(_feed("pending", "failed")).run()
    assert result.step == "error"
    assert result.polls == 2


def test_fetch_errors_are_skipped():
    fetch = _feed(requests.ConnectionError("down"), ValueError("bad json"), "custody_complete")
    result = _poller(fetch, kind="custody").run()
    assert result.status == "custody_complete"
    assert result.step == "complete"
    assert result.polls == 3


def test_backoff_is_capped_and_resets_on_change():
    cfg = PollerConfig(interval_seconds=1, backoff_factor=2, max_interval_seconds=5)
    clock = FakeClock()
    fetch = _feed("pending", "pending", "pending", "pending", "pending", "friend_request_sent", "completed")
    _poller(fetch, config=cfg, clock=clock).run()
    # attempt counter: 0,1,2,3,4 on the repeated "pending", back to 0 on the change.
    assert clock.sleeps == [1, 2, 4, 5, 5, 1]


def test_jitter_added_to_interval():
    cfg = PollerConfig(interval_seconds=2, jitter_seconds=1)
    poller = _poller(_feed("pending"), config=cfg)
    assert poller.next_interval(0) == pytest.approx(2.5)


def test_max_elapsed_gives_up():
    cfg = PollerConfig(interval_seconds=3, max_elapsed_seconds=10)
    result = _poller(_feed("friend_request_sent"), config=cfg).run()
    assert result.timed_out
    assert result.status == "friend_request_sent"
    assert result.step == "friend_request"
    assert result.polls == 4


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        StatusPoller(lambda: {}, kind="swap")


def test_load_poller_config():
    cfg = load_poller_config({"poller": {"interval_seconds": 2, "backoff_factor": 1.5, "max_elapsed_seconds": 0}})
    assert cfg.interval_seconds == 2.0
    assert cfg.backoff_factor == 1.5
    assert cfg.max_elapsed_seconds is None


def test_http_status_source_urls():
    src = HttpStatusSource("http://localhost:8000/")
    assert src.url_for("trade", "t1") == "http://localhost:8000/api/bot-trading/status/t1"
    assert src.url_for("custody", "c1") == "http://localhost:8000/api/bot-trading/custody/status/c1"
