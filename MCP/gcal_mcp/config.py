"""Common configuration for the Google Calendar MCP server."""

from __future__ import annotations

import os
from pathlib import Path

# Base directory of the project (where google_secret.json lives by default)
BASE_DIR = Path(__file__).resolve().parent.parent

# Per-user directory holding the encrypted token store and its key.
CONFIG_DIR = Path(
    os.getenv("GCAL_MCP_CONFIG_DIR", Path.home() / ".google-calendar-mcp")
).expanduser()
TOKENS_FILE = CONFIG_DIR / "tokens.json"
ENCRYPTION_KEY_FILE = CONFIG_DIR / "encryption-key.txt"

# Optional 64-character hex key; takes precedence over ENCRYPTION_KEY_FILE.
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY") or None

# Path to the OAuth client secret downloaded from Google Cloud.
DEFAULT_CREDENTIALS_PATH = Path(
    os.getenv("GOOGLE_OAUTH_CLIENT_FILE", BASE_DIR / "google_secret.json")
)

# OAuth scopes that the server needs.
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
]

# The single identity slot tokens are stored under.
DEFAULT_IDENTITY = "default-user"

# Host/port the transient OAuth callback listener binds during authorization.
AUTH_HOST = os.getenv("MCP_GOOGLE_CAL_AUTH_HOST", "localhost")
AUTH_REDIRECT_PORT = int(os.getenv("MCP_GOOGLE_CAL_AUTH_PORT", "4153"))

# Prompt for a pasted authorization code instead of running the callback listener.
USE_MANUAL_AUTH = os.getenv("MCP_GOOGLE_CAL_MANUAL_AUTH", "").strip().lower() in ("1", "true", "yes")

# Authorization flow timing, in seconds.
AUTH_POLL_INTERVAL = 0.2
AUTH_TIMEOUT = 5 * 60

# Default host/port for the SSE (HTTP) transport the server exposes.
DEFAULT_HOST = os.getenv("MCP_GOOGLE_CAL_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("MCP_GOOGLE_CAL_PORT", "9079"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
