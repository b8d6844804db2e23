"""
TeamRoom Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "teamroom.db"
_user_default_db = Path.home() / ".teamroom" / "teamroom.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("TEAMROOM_DB"):
    DB_PATH = os.getenv("TEAMROOM_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("TEAMROOM_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("TEAMROOM_PORT", config_data.get("PORT", "39775")))

# How often agents are expected to heartbeat (ms).
HEARTBEAT_INTERVAL_MS = int(os.getenv("TEAMROOM_HEARTBEAT_INTERVAL_MS", config_data.get("HEARTBEAT_INTERVAL_MS", "30000")))

# Lease length granted by each heartbeat (ms). Must exceed HEARTBEAT_INTERVAL_MS
# so a single missed beat does not expire the participant.
HEARTBEAT_TTL_MS = int(os.getenv("TEAMROOM_HEARTBEAT_TTL_MS", config_data.get("HEARTBEAT_TTL_MS", "60000")))

# Consecutive revive attempts before a role lands in dead_failed_revive.
MAX_RESTART_ATTEMPTS = int(os.getenv("TEAMROOM_MAX_RESTART_ATTEMPTS", config_data.get("MAX_RESTART_ATTEMPTS", "3")))

# Auto-restart debounce window and stop->start settle delay (seconds).
RESTART_COOLDOWN_SECONDS = float(os.getenv("TEAMROOM_RESTART_COOLDOWN", config_data.get("RESTART_COOLDOWN_SECONDS", "10")))
RESTART_SETTLE_SECONDS = float(os.getenv("TEAMROOM_RESTART_SETTLE", config_data.get("RESTART_SETTLE_SECONDS", "2")))

# Non-terminal tasks allowed per chatroom.
MAX_ACTIVE_TASKS = int(os.getenv("TEAMROOM_MAX_ACTIVE_TASKS", "100"))

# Upper bound on a single store call made from the HTTP layer (seconds).
DB_TIMEOUT = float(os.getenv("TEAMROOM_DB_TIMEOUT", "5"))

TEAMROOM_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "HEARTBEAT_INTERVAL_MS": HEARTBEAT_INTERVAL_MS,
        "HEARTBEAT_TTL_MS": HEARTBEAT_TTL_MS,
        "MAX_RESTART_ATTEMPTS": MAX_RESTART_ATTEMPTS,
        "RESTART_COOLDOWN_SECONDS": RESTART_COOLDOWN_SECONDS,
        "RESTART_SETTLE_SECONDS": RESTART_SETTLE_SECONDS,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
