"""
Configuration for Yield Hunter
"""
import logging
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = BASE_DIR / "data"
LOGS_DIR = BASE_DIR / "logs"

# Underlying tracked by the dashboard (single ETF)
TICKER = "QQQ"

# Strategy defaults
DEFAULT_SPREAD_WIDTH = 5.0  # $5 wide put credit spread
SPREAD_WIDTH_TOLERANCE = 0.5  # Flag spreads whose actual width drifts more than this
CONTRACT_MULTIPLIER = 100
DAYS_PER_YEAR = 365

# Volatility classification (IV rank, 0-100)
IV_RANK_SELL_THRESHOLD = 50  # rank >= 50 favours selling premium
IV_RANK_BUY_THRESHOLD = 20  # rank <= 20 favours buying premium

# Keys shorter than this are treated as "not configured"
MIN_API_KEY_LENGTH = 6

# Logging
LOG_LEVEL = "INFO"
LOG_FILE = LOGS_DIR / "yield_hunter.log"


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for the Streamlit entry point."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler()
        ]
    )
