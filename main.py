"""PetBot client entrypoint: follow a trade or custody request until it finishes.

The HTTP service itself is started with `api_server.py`.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv


def _load_local_secrets() -> None:
    """Load local secrets for development runs (ignored by git)."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)


def main() -> None:
    _load_local_secrets()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Poll a bot trade or custody request until it completes.")
    sub = parser.add_subparsers(dest="command", required=True)
    poll = sub.add_parser("poll", help="Follow a request's status.")
    poll.add_argument("kind", choices=["trade", "custody"])
    poll.add_argument("request_id")
    poll.add_argument("--base-url", default="http://127.0.0.1:8000")
    args = parser.parse_args()

    from petbot.client.poller import HttpStatusSource, StatusPoller, load_poller_config
    from petbot.utils.config_loader import load_config

    source = HttpStatusSource(args.base_url)
    poller = StatusPoller(
        lambda: source.fetch(args.kind, args.request_id),
        kind=args.kind,
        config=load_poller_config(load_config()),
        on_update=lambda step, doc: print(f"{doc.get('status')}: {step}"),
    )
    result = poller.run()
    if result.timed_out:
        raise SystemExit(f"Stopped waiting after {result.elapsed:.0f}s (last status: {result.status})")
    raise SystemExit(0 if result.step == "complete" else 1)


if __name__ == "__main__":
    main()
