"""
Gemini provider: AI search fallback for price, options and VXN volatility.
Source: google-genai generate_content with the Google Search grounding tool.

The model answers in free text; we pull a JSON object out of it and only
accept payloads that match the expected shape. Every search strategy is
tried in order, one at a time, stopping at the first usable answer.
"""
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from google import genai
from google.genai import types as genai_types

from calculations import StrikeTargetCalculator, VolatilityCalculator
from config import TICKER
from models import ContractType
from ..config import GEMINI_MODEL, VOLATILITY_DEFAULT_HIGH, VOLATILITY_DEFAULT_LOW
from ..errors import KeyInvalid, ParseFailure, PriceUnavailable
from ..models import (
    MODE_AI_SEARCH,
    AcquisitionResult,
    ContractQuote,
    Source,
    VolatilityMetrics,
    merge_sources,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass(frozen=True)
class SearchStrategy:
    """One site-scoped way of asking the search-grounded model."""
    name: str
    query_prefix: str
    description: str
    query_template: str  # formatted with ticker, date, strike, type

    def query(self, ticker: str, date: str, strike: float, contract_type: str) -> str:
        return self.query_template.format(
            ticker=ticker, date=date, strike=f"{strike:g}", type=contract_type
        )


# Sites with simple static HTML first: their snippets are readable by the model
STOCK_ANALYSIS = SearchStrategy(
    name="StockAnalysis",
    query_prefix="site:stockanalysis.com",
    description="Scanning StockAnalysis.com...",
    query_template="site:stockanalysis.com {ticker} option chain {type} {date}",
)
BARCHART = SearchStrategy(
    name="BarChart",
    query_prefix="site:barchart.com",
    description="Scanning BarChart.com...",
    query_template="site:barchart.com {ticker} {type} option {date} strike {strike}",
)
YAHOO_FINANCE = SearchStrategy(
    name="Yahoo Finance",
    query_prefix="site:finance.yahoo.com",
    description="Scanning Yahoo Finance...",
    query_template="site:finance.yahoo.com {ticker} {date} option chain",
)
GENERAL_SEARCH = SearchStrategy(
    name="General Search",
    query_prefix="",
    description="Trying general sources...",
    query_template="{ticker} {type} option prices expiration {date} strike {strike}",
)

OPTION_STRATEGIES: List[SearchStrategy] = [STOCK_ANALYSIS, BARCHART, YAHOO_FINANCE, GENERAL_SEARCH]
PRICE_STRATEGIES: List[SearchStrategy] = [YAHOO_FINANCE, GENERAL_SEARCH]


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------

def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Pull a JSON object out of model text.

    Tries a fenced ```json block first, then the span between the first
    "{" and the last "}". Returns None (and logs) when neither parses to
    a JSON object.
    """
    if not text:
        return None

    match = _FENCED_JSON.search(text)
    if match:
        try:
            payload = json.loads(match.group(1))
            if isinstance(payload, dict):
                return payload
        except ValueError as exc:
            logger.warning(f"Fenced JSON parse failed: {exc}")

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        try:
            payload = json.loads(text[first:last + 1])
            if isinstance(payload, dict):
                return payload
        except ValueError as exc:
            logger.warning(f"Raw JSON parse failed: {exc}")
    return None


def _real_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def parse_price_payload(payload: Optional[Dict[str, Any]]) -> Optional[float]:
    """{"currentPrice": <number > 0>} -> price, anything else -> None."""
    if not isinstance(payload, dict):
        return None
    price = _real_number(payload.get("currentPrice"))
    return price if price and price > 0 else None


def parse_options_payload(payload: Optional[Dict[str, Any]]) -> List[ContractQuote]:
    """
    {"options": [{"strike": n, "premium": n}, ...]} -> quotes.
    Entries without a positive strike and premium are dropped.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("options"), list):
        return []

    quotes: List[ContractQuote] = []
    for entry in payload["options"]:
        if not isinstance(entry, dict):
            continue
        strike = _real_number(entry.get("strike"))
        premium = _real_number(entry.get("premium"))
        if not strike or strike <= 0 or not premium or premium <= 0:
            continue
        quotes.append(ContractQuote(
            strike=strike,
            premium=premium,
            iv=_real_number(entry.get("iv")),
            delta=_real_number(entry.get("delta")),
        ))
    return quotes


def extract_sources(response: Any) -> List[Source]:
    """Web citations from the first candidate's grounding metadata."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []

    sources: List[Source] = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None)
        if uri:
            sources.append(Source(uri=uri, title=getattr(web, "title", None) or "Source"))
    return merge_sources(sources)


# ----------------------------------------------------------------------
# Provider
# ----------------------------------------------------------------------

class GeminiProvider:
    """
    Search-grounded Gemini client.
    A google.genai Client can be injected; otherwise one is built from the key.
    """

    def __init__(
        self,
        api_key: str,
        ticker: str = TICKER,
        client: Optional[Any] = None,
        model: str = GEMINI_MODEL,
    ):
        api_key = (api_key or "").strip()
        if not api_key and client is None:
            raise KeyInvalid("Gemini API key is missing")
        self.ticker = ticker.upper()
        self.model = model
        self._client = client or genai.Client(api_key=api_key)

    def _ask_json(self, prompt: str) -> Tuple[Dict[str, Any], List[Source]]:
        """One grounded generation. Raises ParseFailure when no JSON object comes back."""
        response = self._client.models.generate_content(
            model=self.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())]
            ),
        )
        payload = extract_json(getattr(response, "text", None))
        if payload is None:
            raise ParseFailure("No JSON object in model response")
        return payload, extract_sources(response)

    def _price_prompt(self, strategy: SearchStrategy) -> str:
        query = f"{strategy.query_prefix} current real-time price NASDAQ:{self.ticker} ETF.".strip()
        return (
            f"Search query: {query}\n"
            "Task: Find the live price.\n"
            'Return JSON ONLY: { "currentPrice": <number> }'
        )

    def _options_prompt(
        self,
        strategy: SearchStrategy,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
        strikes: List[float],
    ) -> str:
        strike_list = ", ".join(f"{s:g}" for s in strikes)
        kind = contract_type.value.upper()
        query = strategy.query(self.ticker, target_date, strikes[1], contract_type.value)
        rows = ",\n".join(f'    {{ "strike": {s:g}, "premium": <number> }}' for s in strikes)
        return (
            f"Context: {self.ticker} price is ${current_price}. Expiration: {target_date}.\n"
            f"Target strikes: {strike_list}. Contract type: {kind}.\n\n"
            f"Search query: {query}\n\n"
            f'Task: Find the "Bid" or "Last" price for {self.ticker} {kind} options expiring '
            f"{target_date} for these specific strikes: {strike_list}.\n"
            "If you find the option table, extract the premiums.\n\n"
            "Return JSON ONLY:\n"
            '{\n  "options": [\n' + rows + "\n  ]\n}"
        )

    def get_current_price(self, on_progress: Optional[ProgressCallback] = None) -> Tuple[float, List[Source]]:
        """
        Try each price strategy in order until one yields a positive price.

        Raises:
            PriceUnavailable: every strategy exhausted
        """
        for strategy in PRICE_STRATEGIES:
            if on_progress:
                on_progress(f"Finding price on {strategy.name}...")
            try:
                payload, sources = self._ask_json(self._price_prompt(strategy))
            except ParseFailure as exc:
                logger.warning(f"Gemini: price parse failed on {strategy.name}: {exc.message}")
                continue
            except Exception as exc:
                logger.warning(f"Gemini: price fetch failed on {strategy.name}: {exc}")
                continue

            price = parse_price_payload(payload)
            if price:
                logger.info(f"Gemini: {self.ticker} price {price} from {strategy.name}")
                return price, sources
            logger.warning(f"Gemini: no usable price from {strategy.name}")

        raise PriceUnavailable(f"Could not retrieve {self.ticker} price from any source.")

    def get_option_quotes(
        self,
        target_date: str,
        contract_type: ContractType,
        current_price: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[List[ContractQuote], List[Source]]:
        """
        Ask each option strategy for the three target strikes. Partial
        coverage is accepted; an empty list means every strategy missed.
        """
        strikes = StrikeTargetCalculator.target_strike_band(current_price, contract_type)

        for strategy in OPTION_STRATEGIES:
            if on_progress:
                on_progress(strategy.description)
            prompt = self._options_prompt(strategy, target_date, contract_type, current_price, strikes)
            try:
                payload, sources = self._ask_json(prompt)
            except ParseFailure as exc:
                logger.warning(f"Gemini: option parse failed on {strategy.name}: {exc.message}")
                continue
            except Exception as exc:
                logger.warning(f"Gemini: option fetch failed on {strategy.name}: {exc}")
                continue

            quotes = parse_options_payload(payload)
            if quotes:
                logger.info(f"Gemini: {len(quotes)} option quotes from {strategy.name}")
                return quotes, sources
            logger.warning(f"Gemini: no usable option quotes from {strategy.name}")

        return [], []

    def fetch(
        self,
        target_date: str,
        on_progress: Optional[ProgressCallback] = None,
        contract_type: ContractType = ContractType.PUT,
    ) -> AcquisitionResult:
        """Price discovery, then option discovery. Only price exhaustion is fatal."""
        contract_type = ContractType(contract_type)
        current_price, price_sources = self.get_current_price(on_progress)
        quotes, option_sources = self.get_option_quotes(
            target_date, contract_type, current_price, on_progress
        )
        return AcquisitionResult(
            current_price=current_price,
            quotes=quotes,
            sources=merge_sources(price_sources, option_sources),
            mode=MODE_AI_SEARCH,
        )

    def fetch_volatility(self) -> Optional[VolatilityMetrics]:
        """
        VXN (Cboe Nasdaq-100 Volatility Index) level and 52-week range.
        Returns None when the answer has no current level; missing high/low
        fall back to the long-run defaults.
        """
        prompt = (
            "Search Query: ^VXN index price 52 week range CBOE Nasdaq Volatility\n\n"
            "Task: Find the current price and the 52-week High/Low range for the "
            "Cboe Nasdaq-100 Volatility Index (^VXN).\n\n"
            "Return JSON ONLY:\n"
            '{\n  "currentIV": <number>,\n  "highIV": <number>,\n  "lowIV": <number>\n}'
        )
        payload, _ = self._ask_json(prompt)

        current = _real_number(payload.get("currentIV"))
        if not current or current <= 0:
            logger.warning("Gemini: VXN response had no current level")
            return None

        high = _real_number(payload.get("highIV")) or VOLATILITY_DEFAULT_HIGH
        low = _real_number(payload.get("lowIV")) or VOLATILITY_DEFAULT_LOW
        rank = VolatilityCalculator.iv_rank(current, low, high)
        return VolatilityMetrics(
            current=current,
            high=high,
            low=low,
            rank=rank,
            status=VolatilityCalculator.iv_status(rank),
        )
