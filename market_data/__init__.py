"""
Yield Hunter Market Data Service.

Usage:
    from market_data import YieldHunterService
    service = YieldHunterService(polygon_key="...", gemini_key="...")

    # Chain for the next weekly expiration (Polygon first, Gemini fallback)
    outcome = service.fetch(target_date="2026-10-23", strategy=Strategy.CSP)

    # Normalised rows live in the shared state
    df = service.state.book.to_frame(service.state.strategy, service.state.spread_width)

    # VXN volatility lands in service.state.volatility when it resolves
    service.wait_for_volatility(timeout=30)
"""
from .service import FetchInProgressError, FetchOutcome, YieldHunterService

__all__ = ["YieldHunterService", "FetchOutcome", "FetchInProgressError"]
