import os
import tempfile
from pathlib import Path

# Must run before any petbot module is imported: the DB path and config are read at import time.
_tmp = Path(tempfile.mkdtemp(prefix="petbot-tests-"))
os.environ["PETBOT_DB_PATH"] = str(_tmp / "petbot-test.db")
os.environ["PETBOT_PLATFORM_MODE"] = "simulated"
os.environ["PETBOT_STORE_BACKEND"] = "memory"
# 1% of production delays: friend request after 0.02s, trade acceptance after 0.3s, ...
os.environ["PETBOT_TIMING_SCALE"] = "0.01"
os.environ.pop("PETBOT_CONFIG_PATH", None)
