"""
Client-side status poller.

Mirrors what the storefront does while a trade or custody request is in flight:
fetch the status on an interval, map it to a UI step, stop on a terminal status.
The default config polls at a fixed interval; `backoff_factor`, `jitter_seconds`
and `max_elapsed_seconds` turn it into a capped exponential backoff with a deadline.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from petbot.domain.models import CUSTODY, TRADE
from petbot.orchestrator import state_machine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollerConfig:
    interval_seconds: float = 3.0
    backoff_factor: float = 1.0
    max_interval_seconds: float = 30.0
    jitter_seconds: float = 0.0
    max_elapsed_seconds: float | None = None


def load_poller_config(config: dict) -> PollerConfig:
    p = (config.get("poller") or {}) if isinstance(config, dict) else {}
    max_elapsed = p.get("max_elapsed_seconds")
    return PollerConfig(
        interval_seconds=float(p.get("interval_seconds", 3)),
        backoff_factor=float(p.get("backoff_factor", 1.0)),
        max_interval_seconds=float(p.get("max_interval_seconds", 30)),
        jitter_seconds=float(p.get("jitter_seconds", 0)),
        max_elapsed_seconds=float(max_elapsed) if max_elapsed else None,
    )


@dataclass
class PollResult:
    status: str | None
    step: str
    doc: dict[str, Any] | None
    polls: int
    elapsed: float
    timed_out: bool = False


class HttpStatusSource:
    """Fetches request status documents from the bot-trading API."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def url_for(self, kind: str, request_id: str) -> str:
        if kind == CUSTODY:
            return f"{self.base_url}/api/bot-trading/custody/status/{request_id}"
        return f"{self.base_url}/api/bot-trading/status/{request_id}"

    def fetch(self, kind: str, request_id: str) -> dict[str, Any]:
        resp = self.session.get(self.url_for(kind, request_id), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


class StatusPoller:
    def __init__(
        self,
        fetch: Callable[[], dict[str, Any]],
        kind: str = TRADE,
        config: PollerConfig | None = None,
        on_update: Callable[[str, dict[str, Any]], None] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        state_machine.flow(kind)  # validates kind
        self.fetch = fetch
        self.kind = kind
        self.config = config or PollerConfig()
        self.on_update = on_update
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def next_interval(self, attempt: int) -> float:
        """Delay before the next poll; `attempt` counts polls since the status last changed."""
        cfg = self.config
        base = cfg.interval_seconds * (cfg.backoff_factor ** max(0, attempt))
        delay = min(base, max(cfg.max_interval_seconds, cfg.interval_seconds))
        if cfg.jitter_seconds > 0:
            delay += self._rng() * cfg.jitter_seconds
        return delay

    def run(self) -> PollResult:
        start = self._clock()
        polls = 0
        attempt = 0
        last_status: str | None = None
        last_doc: dict[str, Any] | None = None

        while True:
            polls += 1
            try:
                doc = self.fetch()
            except (requests.RequestException, ValueError) as e:
                logger.warning("Error polling %s status: %s", self.kind, e)
                doc = None

            if doc is not None:
                status = str(doc.get("status") or "")
                last_doc = doc
                if status != last_status:
                    attempt = 0
                    last_status = status
                    step = state_machine.ui_step(self.kind, status)
                    logger.info("%s status %s (step %s)", self.kind, status, step)
                    if self.on_update:
                        self.on_update(step, doc)
                else:
                    attempt += 1
                if status in state_machine.statuses(self.kind) and state_machine.is_terminal(self.kind, status):
                    return self._result(last_status, last_doc, polls, start)

            elapsed = self._clock() - start
            delay = self.next_interval(attempt)
            max_elapsed = self.config.max_elapsed_seconds
            if max_elapsed is not None and elapsed + delay > max_elapsed:
                logger.warning("Gave up polling %s after %.1fs", self.kind, elapsed)
                return self._result(last_status, last_doc, polls, start, timed_out=True)
            self._sleep(delay)

    def _result(self, status: str | None, doc: dict[str, Any] | None, polls: int, start: float, *, timed_out: bool = False) -> PollResult:
        step = state_machine.ui_step(self.kind, status) if status else "processing"
        return PollResult(status=status, step=step, doc=doc, polls=polls, elapsed=self._clock() - start, timed_out=timed_out)
