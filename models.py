"""
Data models for Yield Hunter option rows
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ContractType(str, Enum):
    """Option right."""
    PUT = "put"
    CALL = "call"


class Strategy(str, Enum):
    """Premium-selling strategy shown by the dashboard."""
    CSP = "CSP"  # Cash-secured put
    PCS = "PCS"  # Put credit spread
    CC = "CC"  # Covered call

    @property
    def contract_type(self) -> ContractType:
        """Covered calls sell calls; both put strategies sell puts."""
        return ContractType.CALL if self is Strategy.CC else ContractType.PUT


class FetchStatus(str, Enum):
    """Lifecycle of a single chain fetch."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


def make_row_id(strike: float, expiration_date: str, contract_type: ContractType) -> str:
    """Composite key used for duplicate detection (e.g. "490.0-2026-10-23-put")."""
    return f"{float(strike)}-{expiration_date}-{ContractType(contract_type).value}"


@dataclass
class OptionRow:
    """
    Normalized option contract with derived yield metrics.
    Percent fields are already scaled (12.5 == 12.5%).
    delta / iv / win_rate are None when the source could not supply them.
    """
    id: str
    strike: float
    premium: float
    contract_type: ContractType
    expiration_date: str  # YYYY-MM-DD
    days_to_expiration: int  # Always >= 1
    annualized_return: float
    roi: float
    breakeven: float
    capital_required: float
    delta: Optional[float] = None
    iv: Optional[float] = None
    win_rate: Optional[float] = None


@dataclass
class SpreadMetrics:
    """
    Vertical spread built from a short row and the nearest-strike long leg.
    Every numeric field is None when no long leg could be matched.
    spread_roi / spread_annualized_return are also None when max_risk <= 0.
    """
    short_strike: float
    target_width: float
    long_leg: Optional[OptionRow] = None
    net_credit: Optional[float] = None
    actual_width: Optional[float] = None
    max_risk: Optional[float] = None
    spread_roi: Optional[float] = None
    spread_annualized_return: Optional[float] = None
    width_mismatch: bool = False

    @property
    def has_long_leg(self) -> bool:
        return self.long_leg is not None


class VolatilityStatus(str, Enum):
    """Tri-state premium-selling signal derived from IV rank."""
    SELL = "sell"
    NEUTRAL = "neutral"
    BUY = "buy"

    @property
    def label(self) -> str:
        return {
            VolatilityStatus.SELL: "High volatility (Sell)",
            VolatilityStatus.NEUTRAL: "Neutral",
            VolatilityStatus.BUY: "Low volatility (Buy)",
        }[self]

    @property
    def color(self) -> str:
        return {
            VolatilityStatus.SELL: "emerald",
            VolatilityStatus.NEUTRAL: "yellow",
            VolatilityStatus.BUY: "red",
        }[self]


@dataclass
class ExpectedMove:
    """One standard deviation move and the three strike targets it implies."""
    aggressive: float  # 0.5 sd out of the money
    moderate: float  # 1.0 sd
    safe: float  # 2.0 sd
    std_dev: float
    days_to_expiration: int

    def as_list(self) -> list:
        return [self.aggressive, self.moderate, self.safe]
