"""Constants used across the display-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "display-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

# Section holding the persisted display preferences record.
DISPLAY_SECTION = "display"

DEFAULT_CLIENT_NAME = "python-display"
DEFAULT_BRIGHTNESS_MODE = "auto"
BRIGHTNESS_MODES = ("auto", "light", "dark")
DEFAULT_ALERT_THRESHOLD_WATTS = 2000.0

DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_RELAY_PORT = 8080
DEFAULT_RELAY_URL = f"http://localhost:{DEFAULT_RELAY_PORT}"
