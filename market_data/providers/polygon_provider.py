"""
Polygon.io provider: underlying price and options chain over the REST API.
Source: api.polygon.io (key passed as the apiKey query parameter).

Price:  latest trade, falling back to the previous-close aggregate.
Chain:  full snapshot (IV + delta) when the plan allows it; otherwise the
        restricted-tier path: reference contract list + previous close per
        selected contract (no IV, no delta).
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from calculations import StrikeTargetCalculator
from config import TICKER
from models import ContractType
from ..config import (
    CALL_STRIKE_BAND,
    POLYGON_BASE_URL,
    POLYGON_SOURCE_URI,
    PUT_STRIKE_BAND,
    REFERENCE_LIMIT,
    REQUEST_TIMEOUT_SECONDS,
    SNAPSHOT_LIMIT,
    TOP_CONTRACTS,
)
from ..errors import (
    EntitlementRestricted,
    KeyInvalid,
    MarketDataError,
    NetworkFailure,
    ParseFailure,
    PriceUnavailable,
)
from ..models import (
    MODE_RESTRICTED,
    MODE_SNAPSHOT,
    AcquisitionResult,
    ContractQuote,
    KeyValidation,
    Source,
)

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = (401, 403)


def _positive_number(value: Any) -> Optional[float]:
    """Return value as float if it is a real, finite, positive number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _optional_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _sort_quotes(quotes: List[ContractQuote], contract_type: ContractType) -> List[ContractQuote]:
    """Nearest the money first: puts by strike descending, calls ascending."""
    return sorted(quotes, key=lambda q: q.strike, reverse=contract_type == ContractType.PUT)


class PolygonProvider:
    """
    Fetches the underlying price and an options chain from Polygon.io.
    Every call is sequential; a requests.Session can be injected for tests.
    """

    def __init__(
        self,
        api_key: str,
        ticker: str = TICKER,
        session: Optional[requests.Session] = None,
        base_url: str = POLYGON_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self._api_key = (api_key or "").strip()
        self.ticker = ticker.upper()
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get(self, path: str, **params) -> requests.Response:
        """GET a Polygon path. Transport errors surface as NetworkFailure."""
        params["apiKey"] = self._api_key
        try:
            return self._session.get(
                f"{self._base_url}{path}", params=params, timeout=self._timeout
            )
        except requests.RequestException as exc:
            # requests puts the full URL (apiKey included) in its messages
            detail = str(exc).replace(self._api_key, "***") if self._api_key else str(exc)
            raise NetworkFailure(f"Polygon request to {path} failed: {detail}") from exc

    @staticmethod
    def _json(response: requests.Response, path: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseFailure(f"Polygon returned invalid JSON for {path}") from exc
        if not isinstance(payload, dict):
            raise ParseFailure(f"Polygon returned unexpected payload for {path}")
        return payload

    # ------------------------------------------------------------------
    # Key verification
    # ------------------------------------------------------------------

    def validate_key(self) -> KeyValidation:
        """
        Confirm the key with a minimal reference-list call.
        401/403 -> invalid; other non-2xx -> network/service error; 2xx -> valid.
        """
        path = "/v3/reference/tickers"
        try:
            response = self._get(path, market="stocks", active="true", limit=1)
        except NetworkFailure as exc:
            return KeyValidation(valid=False, message=exc.message)

        if response.status_code in AUTH_STATUS_CODES:
            return KeyValidation(
                valid=False,
                message=f"Key rejected ({response.status_code}). Check that it is correct and not expired.",
                status_code=response.status_code,
            )
        if not response.ok:
            return KeyValidation(
                valid=False,
                message=f"Network error: {response.status_code} {response.reason}",
                status_code=response.status_code,
            )

        try:
            payload = self._json(response, path)
        except ParseFailure:
            return KeyValidation(False, "Unknown response format", response.status_code)

        if payload.get("status") == "OK" or isinstance(payload.get("results"), list):
            return KeyValidation(True, "Key is valid!", response.status_code)
        return KeyValidation(False, "Unknown response format", response.status_code)

    # ------------------------------------------------------------------
    # Underlying price
    # ------------------------------------------------------------------

    def _latest_trade_price(self) -> Optional[float]:
        path = f"/v2/last/trade/{self.ticker}"
        try:
            response = self._get(path)
            if not response.ok:
                logger.warning(f"Polygon: latest trade returned {response.status_code}, trying previous close")
                return None
            results = self._json(response, path).get("results") or {}
            return _positive_number(results.get("p")) if isinstance(results, dict) else None
        except MarketDataError as exc:
            logger.warning(f"Polygon: latest trade failed ({exc.message}), trying previous close")
            return None

    def _previous_close(self, ticker: str) -> Optional[float]:
        """Close of the previous session for a stock or option ticker. Raises on HTTP errors."""
        path = f"/v2/aggs/ticker/{ticker}/prev"
        response = self._get(path, adjusted="true")
        if response.status_code in AUTH_STATUS_CODES:
            raise KeyInvalid(f"Polygon rejected the API key ({response.status_code})")
        if not response.ok:
            raise NetworkFailure(
                f"Previous close for {ticker} returned {response.status_code}",
                status_code=response.status_code,
            )
        results = self._json(response, path).get("results")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return None
        return _positive_number(results[0].get("c"))

    def get_current_price(self) -> float:
        """
        Current underlying price.

        Raises:
            KeyInvalid: previous-close call rejected with 401/403
            PriceUnavailable: neither endpoint produced a positive price
        """
        price = self._latest_trade_price()
        if price:
            return price

        try:
            price = self._previous_close(self.ticker)
        except KeyInvalid:
            raise
        except MarketDataError as exc:
            raise PriceUnavailable(
                f"Could not get {self.ticker} price from Polygon: {exc.message}"
            ) from exc

        if not price:
            raise PriceUnavailable(f"Polygon returned no {self.ticker} price data")
        return price

    # ------------------------------------------------------------------
    # Options chain
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_snapshot_quote(contract: Any) -> Optional[ContractQuote]:
        """
        Normalise one snapshot result. Bid is preferred, then the session
        close, then the last trade. Contracts without a strike or any
        positive price are skipped, never defaulted to zero.
        """
        if not isinstance(contract, dict):
            return None

        details = contract.get("details") or {}
        strike = _positive_number(details.get("strike_price"))
        if strike is None:
            return None

        last_quote = contract.get("last_quote") or {}
        day = contract.get("day") or {}
        last_trade = contract.get("last_trade") or {}
        premium = (
            _positive_number(last_quote.get("bid", last_quote.get("b")))
            or _positive_number(day.get("close", day.get("c")))
            or _positive_number(last_trade.get("price", last_trade.get("p")))
        )
        if premium is None:
            return None

        greeks = contract.get("greeks") or {}
        return ContractQuote(
            strike=strike,
            premium=premium,
            iv=_optional_number(contract.get("implied_volatility")),
            delta=_optional_number(greeks.get("delta")),
        )

    def fetch_snapshot_chain(
        self,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
    ) -> List[ContractQuote]:
        """
        Snapshot chain within the strike band, trimmed to the TOP_CONTRACTS
        nearest the money.

        Raises:
            EntitlementRestricted: 401/403 (plan lacks snapshot access)
            NetworkFailure: any other non-2xx
        """
        low, high = PUT_STRIKE_BAND if contract_type == ContractType.PUT else CALL_STRIKE_BAND
        path = f"/v3/snapshot/options/{self.ticker}"
        response = self._get(path, **{
            "expiration_date": target_date,
            "contract_type": contract_type.value,
            "strike_price.gte": math.floor(current_price * low),
            "strike_price.lte": math.ceil(current_price * high),
            "limit": SNAPSHOT_LIMIT,
        })

        if response.status_code in AUTH_STATUS_CODES:
            raise EntitlementRestricted(
                f"Snapshot endpoint not available for this key ({response.status_code})"
            )
        if not response.ok:
            raise NetworkFailure(
                f"Polygon snapshot error: {response.status_code} {response.reason}",
                status_code=response.status_code,
            )

        results = self._json(response, path).get("results") or []
        quotes = [q for q in (self._extract_snapshot_quote(c) for c in results) if q is not None]
        return _sort_quotes(quotes, contract_type)[:TOP_CONTRACTS]

    def _list_contracts(
        self,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
    ) -> List[Dict[str, Any]]:
        path = "/v3/reference/options/contracts"
        params = {
            "underlying_ticker": self.ticker,
            "contract_type": contract_type.value,
            "expiration_date": target_date,
            "sort": "strike_price",
            "limit": REFERENCE_LIMIT,
        }
        if contract_type == ContractType.PUT:
            params.update({"strike_price.lte": current_price, "order": "desc"})
        else:
            params.update({"strike_price.gte": current_price, "order": "asc"})

        response = self._get(path, **params)
        if response.status_code in AUTH_STATUS_CODES:
            raise KeyInvalid(f"Polygon rejected the contract list request ({response.status_code})")
        if not response.ok:
            raise NetworkFailure(
                f"Contract list failed (restricted tier): {response.status_code}",
                status_code=response.status_code,
            )

        results = self._json(response, path).get("results") or []
        return [
            c for c in results
            if isinstance(c, dict) and c.get("ticker") and _positive_number(c.get("strike_price"))
        ]

    def fetch_restricted_chain(
        self,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
        now: Optional[datetime] = None,
    ) -> List[ContractQuote]:
        """
        Restricted-tier chain: one contract nearest each expected-move
        target, priced at its previous close. IV and delta stay None.
        A contract nearest to several targets is priced once.
        """
        targets = StrikeTargetCalculator.expected_move_targets(
            current_price, target_date, contract_type, now=now
        ).as_list()

        contracts = self._list_contracts(target_date, contract_type, current_price)
        if not contracts:
            return []

        selected: List[Dict[str, Any]] = []
        selected_tickers = set()
        for target in targets:
            closest = contracts[0]
            for candidate in contracts[1:]:
                if abs(candidate["strike_price"] - target) < abs(closest["strike_price"] - target):
                    closest = candidate
            if closest["ticker"] not in selected_tickers:
                selected_tickers.add(closest["ticker"])
                selected.append(closest)

        quotes: List[ContractQuote] = []
        for contract in selected:
            ticker = contract["ticker"]
            try:
                close = self._previous_close(ticker)
            except MarketDataError as exc:
                logger.warning(f"Polygon: failed to fetch price for {ticker}: {exc.message}")
                continue
            if close is None:
                logger.warning(f"Polygon: no previous close for {ticker}")
                continue
            quotes.append(ContractQuote(strike=float(contract["strike_price"]), premium=close))

        return _sort_quotes(quotes, contract_type)

    def get_option_chain(
        self,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
    ) -> Tuple[List[ContractQuote], str]:
        """Snapshot first; on an entitlement rejection switch to the restricted-tier path."""
        try:
            return self.fetch_snapshot_chain(target_date, contract_type, current_price), MODE_SNAPSHOT
        except EntitlementRestricted as exc:
            logger.info(f"Polygon: {exc.message}. Switching to restricted-tier contract selection.")
        return self.fetch_restricted_chain(target_date, contract_type, current_price), MODE_RESTRICTED

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        target_date: str,
        contract_type: ContractType = ContractType.PUT,
    ) -> AcquisitionResult:
        """
        Fetch price + chain for one expiration.

        Returns AcquisitionResult (quotes may be empty). Raises KeyInvalid,
        PriceUnavailable or NetworkFailure/ParseFailure for the chain step.
        """
        contract_type = ContractType(contract_type)
        current_price = self.get_current_price()
        quotes, mode = self.get_option_chain(target_date, contract_type, current_price)

        title = (
            "Polygon.io API (Snapshot)" if mode == MODE_SNAPSHOT
            else "Polygon.io API (Restricted tier)"
        )
        logger.info(f"Polygon: {len(quotes)} {contract_type.value} contracts for {target_date} ({mode})")
        return AcquisitionResult(
            current_price=current_price,
            quotes=quotes,
            sources=[Source(uri=POLYGON_SOURCE_URI, title=title)],
            mode=mode,
        )
