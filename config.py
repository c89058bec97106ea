import os
import shutil
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent

# A .env beside the panel fills in anything not already set in the environment.
load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================
# Flask web panel settings
# =============================
FLASK_HOST = os.environ.get("PANEL_HOST", "0.0.0.0")
FLASK_PORT = int(os.environ.get("PORT", "3000"))

# "development" shows error details in 500 responses
PANEL_ENV = os.environ.get("PANEL_ENV", "production")

SECRET_KEY = os.environ.get("SESSION_SECRET") or "CHANGE_ME_SECRET_KEY"
SESSION_COOKIE_NAME = "botPanel.sid"
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = "Strict"
SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", PANEL_ENV == "production")
SESSION_LIFETIME_HOURS = 24

# =============================
# Panel login
# =============================
USERNAME = os.environ.get("PANEL_USERNAME", "admin")      # CHANGE
PASSWORD = os.environ.get("PANEL_PASSWORD", "admin123")   # CHANGE
# Optional werkzeug hash; takes precedence over PASSWORD when set
PASSWORD_HASH = os.environ.get("PASSWORD_HASH", "")

# =============================
# Bot files / runtime
# =============================
BOT_FILES_DIR = os.environ.get("BOT_FILES_DIR", str(BASE_DIR / "home"))
CREDENTIAL_FILE_NAME = ".env"
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "100"))

AVAILABLE_NODE_VERSIONS = ["18", "19", "20", "21"]
DEFAULT_NODE_VERSION = os.environ.get("DEFAULT_NODE_VERSION", "18")

# npm is npm.cmd on Windows, so resolve it once here
RUNTIME_COMMAND = [shutil.which("node") or "node"]
INSTALL_COMMAND = [shutil.which("npm") or "npm", "install", "--production", "--no-audit", "--no-fund"]

ENTRY_FILE_CANDIDATES = ["index.js", "bot.js", "main.js", "app.js"]
MANIFEST_FILE = "package.json"

STOP_GRACE_SEC = 5.0
KILL_WAIT_SEC = 5.0
INSTALL_TIMEOUT_SEC = float(os.environ.get("INSTALL_TIMEOUT_SEC", "300"))
STARTUP_CONFIRM_SEC = 3.0

# =============================
# Logs
# =============================
LOG_CAPACITY = 500
LOG_MESSAGE_LIMIT = 1000
PANEL_LOG_FILE = os.environ.get("PANEL_LOG_FILE", "")
