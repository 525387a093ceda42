import os
from pathlib import Path

from dotenv import load_dotenv

# -----------------------------
# Load environment
# -----------------------------
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / ".env")

# Playwright needs PLAYWRIGHT_BROWSERS_PATH set BEFORE any Playwright import.
# Only force it when the container mount exists, local installs keep
# Playwright's default cache location.
if not os.environ.get("PLAYWRIGHT_BROWSERS_PATH") and os.path.exists("/pw-browsers"):
    os.environ["PLAYWRIGHT_BROWSERS_PATH"] = "/pw-browsers"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

# -----------------------------
# Signaling relay
# -----------------------------
RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("RELAY_PORT", "3001"))
ENGINE_WS_URL = os.environ.get("ENGINE_WS_URL", "ws://localhost:3002/ws/relay")
ENGINE_RECONNECT_SECONDS = float(os.environ.get("ENGINE_RECONNECT_SECONDS", "2"))
HEARTBEAT_INTERVAL_SECONDS = float(os.environ.get("HEARTBEAT_INTERVAL_SECONDS", "30"))

# -----------------------------
# Session store
# -----------------------------
DEFAULT_ROOM_URL = os.environ.get("DEFAULT_ROOM_URL", "https://www.google.com")
DEFAULT_MAX_USERS = int(os.environ.get("DEFAULT_MAX_USERS", "10"))
EMPTY_ROOM_GRACE_SECONDS = float(os.environ.get("EMPTY_ROOM_GRACE_SECONDS", "300"))  # 5m
INACTIVITY_TIMEOUT_SECONDS = float(os.environ.get("INACTIVITY_TIMEOUT_SECONDS", "1800"))  # 30m

# -----------------------------
# Browser automation engine
# -----------------------------
ENGINE_HOST = os.environ.get("ENGINE_HOST", "0.0.0.0")
ENGINE_PORT = int(os.environ.get("ENGINE_PORT", "3002"))
ENGINE_START_URL = os.environ.get("ENGINE_START_URL", DEFAULT_ROOM_URL)
STREAM_INTERVAL_SECONDS = float(os.environ.get("STREAM_INTERVAL_SECONDS", "0.1"))  # ~10 FPS
