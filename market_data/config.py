"""
Configuration for the market data providers.
Reads optional overrides from .env in the project root.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path)

# Polygon.io REST API
POLYGON_BASE_URL: str = os.getenv("POLYGON_BASE_URL", "https://api.polygon.io")
POLYGON_SOURCE_URI = "https://polygon.io"
SNAPSHOT_LIMIT = 250  # Max contracts requested from the chain snapshot
TOP_CONTRACTS = 15  # Contracts kept nearest the money after sorting
REFERENCE_LIMIT = 500  # Max contracts listed on the restricted-tier path

# Strike band requested from the snapshot, as fractions of the underlying price
PUT_STRIKE_BAND = (0.80, 1.02)
CALL_STRIKE_BAND = (0.95, 1.20)

# Per-request timeout in seconds
REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("MARKET_DATA_TIMEOUT", "15"))

# Gemini (search-grounded generation)
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

# VXN 52-week range used when the search result omits high/low
VOLATILITY_DEFAULT_HIGH = 35.0
VOLATILITY_DEFAULT_LOW = 15.0

# Cache TTL in seconds for per-session volatility metrics
CACHE_TTL_SECONDS: int = int(os.getenv("MARKET_DATA_CACHE_TTL", "900"))
