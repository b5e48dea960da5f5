import os
import sys
import uvicorn
import logging
import fcntl
from pathlib import Path
from dotenv import load_dotenv

# Configure logging to write to both stderr and a file immediately.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler("api_server.log", mode="a")
    ]
)
logger = logging.getLogger("api_server")


def _load_local_env() -> None:
    """
    Load bot credentials (BOT_<n>_USER_ID / _USERNAME / _COOKIE) from config/secrets.env (if present).
    """
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def main() -> None:
    _load_local_env()

    # Trade/custody state and bot load counters live in this process (or its SQLite file),
    # so a second instance would hand out the same bots twice. Fail fast instead.
    lock_path = Path(".api_server.lock")
    try:
        lock_f = lock_path.open("w")
        fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        lock_f.write(str(os.getpid()))
        lock_f.flush()
        # Keep lock file handle alive for process lifetime.
    except OSError:
        logger.error("Another API instance appears to be running (lockfile busy). Exiting.")
        sys.exit(1)

    from petbot.utils.config_loader import load_config

    server_cfg = load_config().get("server") or {}
    host = str(server_cfg.get("host", "127.0.0.1"))
    port = int(server_cfg.get("port", 8000))

    try:
        logger.info("Starting PetBot trading API on %s:%d", host, port)
        uvicorn.run(
            "petbot.api.app:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            loop="auto",
            workers=1,  # Strictly 1 worker: the request map and bot counters are per-process
        )
    except Exception as e:
        logger.error(f"Fatal error in API server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
