import os
import sys
import logging

# --- Backend API ---
API_URL = os.environ.get("PETROLL_API_URL", "http://localhost:8080").rstrip("/")
API_TIMEOUT = float(os.environ.get("PETROLL_API_TIMEOUT", "10"))  # seconds

# --- Session cookies ---
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-please-change")
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", str(14 * 24 * 3600)))  # seconds
SESSION_HTTPS_ONLY = bool(int(os.environ.get("SESSION_HTTPS_ONLY", "0")))
SESSION_SAME_SITE = os.environ.get("SESSION_SAME_SITE", "lax")
SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "petroll_session")
# Issued without Max-Age, so the browser drops it when the browsing session ends
TAB_COOKIE_NAME = os.environ.get("TAB_COOKIE_NAME", "petroll_tab")

# --- Login rate limiting (per-IP) ---
LOGIN_WINDOW = int(os.environ.get("LOGIN_WINDOW", "300"))  # seconds
LOGIN_MAX_ATTEMPTS = int(os.environ.get("LOGIN_MAX_ATTEMPTS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def setup_logging() -> None:
    """Setup basic logging for the application."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
