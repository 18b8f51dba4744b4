"""
Persistence layer for API keys
Saves to a local JSON file so keys survive app refreshes.
Keys never leave this machine except as provider credentials.
"""
import json
import logging
import os
from pathlib import Path
from typing import Dict

from config import DATA_DIR

logger = logging.getLogger(__name__)

PERSISTENCE_FILE = DATA_DIR / "user_settings.json"

POLYGON_KEY_SETTING = "polygon_api_key"
GEMINI_KEY_SETTING = "gemini_api_key"


def load_settings(path: Path = PERSISTENCE_FILE) -> Dict:
    """Load user settings from JSON file"""
    if path.exists():
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load settings: {e}")
            return {}
    return {}


def save_settings(settings: Dict, path: Path = PERSISTENCE_FILE):
    """Save user settings to JSON file"""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(settings, f, indent=2)
        logger.info(f"Settings saved to {path}")
    except OSError as e:
        logger.error(f"Could not save settings: {e}")


def _get_key(setting: str, env_var: str, path: Path) -> str:
    stored = load_settings(path).get(setting)
    if isinstance(stored, str) and stored:
        return stored
    # market_data.config has already loaded .env into the environment
    return os.getenv(env_var, "")


def _save_key(setting: str, value: str, path: Path):
    settings = load_settings(path)
    settings[setting] = (value or "").strip()
    save_settings(settings, path)


def get_polygon_key(path: Path = PERSISTENCE_FILE) -> str:
    """Saved Polygon key, else POLYGON_API_KEY from the environment."""
    return _get_key(POLYGON_KEY_SETTING, "POLYGON_API_KEY", path)


def save_polygon_key(value: str, path: Path = PERSISTENCE_FILE):
    _save_key(POLYGON_KEY_SETTING, value, path)


def get_gemini_key(path: Path = PERSISTENCE_FILE) -> str:
    """Saved Gemini key, else GEMINI_API_KEY from the environment."""
    return _get_key(GEMINI_KEY_SETTING, "GEMINI_API_KEY", path)


def save_gemini_key(value: str, path: Path = PERSISTENCE_FILE):
    _save_key(GEMINI_KEY_SETTING, value, path)


def clear_api_keys(path: Path = PERSISTENCE_FILE):
    """Forget both stored keys (environment defaults still apply)."""
    settings = load_settings(path)
    settings.pop(POLYGON_KEY_SETTING, None)
    settings.pop(GEMINI_KEY_SETTING, None)
    save_settings(settings, path)
