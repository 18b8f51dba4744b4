"""
Data models for the Yield Hunter market data layer.
Pure Python dataclasses: no Streamlit, no UI dependencies.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from models import VolatilityStatus

# AcquisitionResult.mode values
MODE_SNAPSHOT = "snapshot"
MODE_RESTRICTED = "restricted"
MODE_AI_SEARCH = "ai_search"


@dataclass
class ContractQuote:
    """
    Raw contract as returned by a provider.
    premium may be a bid, close or last price depending on the source.
    iv / delta are None when the source does not supply them.
    """
    strike: float
    premium: float
    iv: Optional[float] = None
    delta: Optional[float] = None


@dataclass
class Source:
    """Citation for where the numbers came from."""
    uri: str
    title: str = "Source"


def merge_sources(*groups: Iterable[Source]) -> List[Source]:
    """Concatenate citation lists, keeping the first entry per URI."""
    seen = set()
    merged: List[Source] = []
    for group in groups:
        for source in group:
            if not source.uri or source.uri in seen:
                continue
            seen.add(source.uri)
            merged.append(source)
    return merged


@dataclass
class AcquisitionResult:
    """Price, raw quotes and citations from one provider fetch."""
    current_price: float
    quotes: List[ContractQuote] = field(default_factory=list)
    sources: List[Source] = field(default_factory=list)
    mode: str = MODE_SNAPSHOT

    @property
    def is_empty(self) -> bool:
        return not self.quotes


@dataclass
class VolatilityMetrics:
    """VXN level within its 52-week range."""
    current: float
    high: float
    low: float
    rank: float  # 0-100
    status: VolatilityStatus

    @property
    def label(self) -> str:
        return self.status.label

    @property
    def color(self) -> str:
        return self.status.color


@dataclass
class KeyValidation:
    """Outcome of a key-verification call."""
    valid: bool
    message: str
    status_code: Optional[int] = None
