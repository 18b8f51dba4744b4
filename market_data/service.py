"""
YieldHunterService: single entry point for chain acquisition in Yield Hunter.

  fetch()                 → FetchOutcome   (Polygon first, Gemini fallback)
  validate_polygon_key()  → KeyValidation
  add_manual_row() / update_row() / delete_row()  → row intents from the UI

The VXN volatility fetch runs on a worker thread next to the chain fetch and
lands in the shared state whenever it resolves. Its failure is logged only.

Pure Python, no Streamlit imports. Reusable by any app.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from calculations import SpreadCalculator, YieldCalculator, next_friday
from config import DEFAULT_SPREAD_WIDTH, MIN_API_KEY_LENGTH, TICKER
from models import ContractType, FetchStatus, OptionRow, SpreadMetrics, Strategy
from option_book import OptionBook
from .cache import VolatilityCache
from .config import CACHE_TTL_SECONDS
from .errors import KeyInvalid, NoChainFound
from .models import AcquisitionResult, ContractQuote, KeyValidation, Source, VolatilityMetrics
from .providers.gemini_provider import GeminiProvider, ProgressCallback
from .providers.polygon_provider import PolygonProvider

logger = logging.getLogger(__name__)

PROVIDER_POLYGON = "polygon"
PROVIDER_GEMINI = "gemini"

NO_SOURCE_MESSAGE = "Setup: enter a Polygon or Gemini API key in Settings."
NO_CHAIN_MESSAGE = "Got a price but no option chain was found. Try another date or add strikes manually."


class FetchInProgressError(RuntimeError):
    """Raised when fetch() is called while another fetch is still running."""


@dataclass
class FetchOutcome:
    """
    What one fetch produced.
    warning_message: non-fatal (automatic fallback happened / no chain found).
    error_message:   fatal, manual action needed; needs_key_setup asks the UI
                     to open the key settings.
    """
    status: FetchStatus
    rows: List[OptionRow] = field(default_factory=list)
    quotes: List[ContractQuote] = field(default_factory=list)
    current_price: Optional[float] = None
    sources: List[Source] = field(default_factory=list)
    mode: Optional[str] = None
    provider: Optional[str] = None
    warning_message: str = ""
    error_message: str = ""
    no_chain_found: bool = False
    needs_key_setup: bool = False


@dataclass
class DashboardState:
    """Everything the presentation layer renders."""
    status: FetchStatus = FetchStatus.IDLE
    scan_message: str = "Initializing..."
    target_date: str = field(default_factory=next_friday)
    strategy: Strategy = Strategy.CSP
    cost_basis: float = 0.0
    spread_width: float = DEFAULT_SPREAD_WIDTH
    current_price: Optional[float] = None
    book: OptionBook = field(default_factory=OptionBook)
    sources: List[Source] = field(default_factory=list)
    mode: Optional[str] = None
    warning_message: str = ""
    error_message: str = ""
    volatility: Optional[VolatilityMetrics] = None
    volatility_loading: bool = False

    @property
    def contract_type(self) -> ContractType:
        return self.strategy.contract_type


def _message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or exc.__class__.__name__


def _require_positive(strike: Optional[float], premium: Optional[float]) -> None:
    if not strike or strike <= 0 or not premium or premium <= 0:
        raise ValueError("Strike and premium must both be positive")


class YieldHunterService:
    """
    Acquisition orchestrator.

    Instantiate once per session. Overlapping fetches are rejected with
    FetchInProgressError; volatility results from an older fetch are dropped.
    """

    def __init__(
        self,
        polygon_key: str = "",
        gemini_key: str = "",
        ticker: str = TICKER,
        polygon_factory: Optional[Callable[[str], PolygonProvider]] = None,
        gemini_factory: Optional[Callable[[str], GeminiProvider]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.ticker = ticker
        self.polygon_key = polygon_key or ""
        self.gemini_key = gemini_key or ""
        self._polygon_factory = polygon_factory or (lambda key: PolygonProvider(key, ticker=ticker))
        self._gemini_factory = gemini_factory or (lambda key: GeminiProvider(key, ticker=ticker))
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="volatility")
        self._volatility_cache = VolatilityCache(ttl_seconds=CACHE_TTL_SECONDS)
        self._state = DashboardState()
        self._state_lock = threading.RLock()
        self._fetch_lock = threading.Lock()
        self._generation = 0
        self._volatility_future: Optional[Future] = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @property
    def state(self) -> DashboardState:
        return self._state

    @property
    def has_polygon_key(self) -> bool:
        """Present and long enough to plausibly be a real key."""
        return len(self.polygon_key.strip()) >= MIN_API_KEY_LENGTH

    @property
    def has_gemini_key(self) -> bool:
        return bool(self.gemini_key.strip())

    def set_keys(self, polygon_key: Optional[str] = None, gemini_key: Optional[str] = None) -> None:
        if polygon_key is not None:
            self.polygon_key = polygon_key
        if gemini_key is not None:
            # cached volatility is tied to the key that fetched it
            self.gemini_key = gemini_key

    def validate_polygon_key(self) -> KeyValidation:
        if not self.polygon_key.strip():
            return KeyValidation(valid=False, message="No key entered")
        return self._polygon_factory(self.polygon_key.strip()).validate_key()

    # ------------------------------------------------------------------
    # Strategy inputs
    # ------------------------------------------------------------------

    def configure(
        self,
        target_date: Optional[str] = None,
        strategy: Optional[Strategy] = None,
        cost_basis: Optional[float] = None,
        spread_width: Optional[float] = None,
    ) -> None:
        with self._state_lock:
            if target_date is not None:
                self._state.target_date = target_date
            if strategy is not None:
                self._state.strategy = Strategy(strategy)
            if cost_basis is not None:
                self._state.cost_basis = max(0.0, float(cost_basis))
            if spread_width is not None:
                self._state.spread_width = float(spread_width)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _set_progress(self, message: str, on_progress: Optional[ProgressCallback]) -> None:
        with self._state_lock:
            self._state.scan_message = message
        if on_progress:
            on_progress(message)

    def _start_volatility(self, generation: int) -> None:
        """Kick off the VXN fetch without waiting on it."""
        self._volatility_future = None
        if not self.has_gemini_key:
            return

        cached = self._volatility_cache.get(self.gemini_key.strip())
        with self._state_lock:
            if cached is not None:
                self._state.volatility = cached
                return
            self._state.volatility_loading = True

        self._volatility_future = self._executor.submit(
            self._load_volatility, generation, self.gemini_key.strip()
        )

    def _load_volatility(self, generation: int, gemini_key: str) -> Optional[VolatilityMetrics]:
        try:
            metrics = self._gemini_factory(gemini_key).fetch_volatility()
        except Exception as exc:
            logger.warning(f"Volatility fetch failed: {exc}")
            metrics = None

        with self._state_lock:
            if generation != self._generation:
                logger.info("Discarding volatility result from a superseded fetch")
                return metrics
            self._state.volatility = metrics
            self._state.volatility_loading = False
            if metrics is not None:
                self._volatility_cache.put(gemini_key, metrics)
        return metrics

    def wait_for_volatility(self, timeout: Optional[float] = None) -> Optional[VolatilityMetrics]:
        """Block until the in-flight volatility fetch (if any) has been applied."""
        future = self._volatility_future
        if future is not None:
            future.result(timeout=timeout)
        return self._state.volatility

    def _acquire(
        self,
        target_date: str,
        contract_type: ContractType,
        on_progress: Optional[ProgressCallback],
    ) -> FetchOutcome:
        """Provider fallback chain. Returns a failed outcome instead of raising."""
        warning = ""

        if self.has_polygon_key:
            self._set_progress("Connecting to Polygon data feed...", on_progress)
            try:
                result = self._polygon_factory(self.polygon_key.strip()).fetch(target_date, contract_type)
                return self._success(result, PROVIDER_POLYGON, warning)
            except Exception as exc:
                msg = _message(exc)
                logger.error(f"Polygon failed, falling back: {msg}")
                if not self.has_gemini_key:
                    return FetchOutcome(
                        status=FetchStatus.ERROR,
                        provider=PROVIDER_POLYGON,
                        error_message=f"Polygon error: {msg}. (No Gemini key configured, cannot switch to AI search)",
                        needs_key_setup=True,
                    )
                warning = f"Polygon API warning: {msg}. Switching to AI search..."
                with self._state_lock:
                    self._state.warning_message = warning
                self._set_progress("Polygon failed, switching to Gemini AI search...", on_progress)
        elif not self.has_gemini_key:
            return FetchOutcome(
                status=FetchStatus.ERROR,
                error_message=NO_SOURCE_MESSAGE,
                needs_key_setup=True,
            )
        else:
            self._set_progress("Connecting to Gemini AI...", on_progress)

        progress = lambda message: self._set_progress(message, on_progress)  # noqa: E731
        try:
            result = self._gemini_factory(self.gemini_key.strip()).fetch(target_date, progress, contract_type)
        except Exception as exc:
            msg = _message(exc)
            logger.error(f"Gemini AI search failed: {msg}")
            return FetchOutcome(
                status=FetchStatus.ERROR,
                provider=PROVIDER_GEMINI,
                warning_message=warning,
                error_message=msg,
                needs_key_setup=isinstance(exc, KeyInvalid),
            )
        return self._success(result, PROVIDER_GEMINI, warning)

    def _success(self, result: AcquisitionResult, provider: str, warning: str) -> FetchOutcome:
        return FetchOutcome(
            status=FetchStatus.SUCCESS,
            quotes=list(result.quotes),
            current_price=result.current_price,
            sources=list(result.sources),
            mode=result.mode,
            provider=provider,
            warning_message=warning,
        )

    def fetch(
        self,
        target_date: Optional[str] = None,
        strategy: Optional[Strategy] = None,
        cost_basis: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FetchOutcome:
        """
        Fetch the chain for the current strategy and normalise it into rows.

        Raises:
            FetchInProgressError: another fetch is still running
        """
        if not self._fetch_lock.acquire(blocking=False):
            raise FetchInProgressError("A fetch is already in progress")

        try:
            self.configure(target_date=target_date, strategy=strategy, cost_basis=cost_basis)
            with self._state_lock:
                self._generation += 1
                generation = self._generation
                state = self._state
                state.status = FetchStatus.LOADING
                state.error_message = ""
                state.warning_message = ""
                state.sources = []
                state.mode = None
                state.book.clear()
                state.volatility = None
                state.volatility_loading = False
                target = state.target_date
                contract_type = state.contract_type
                basis = state.cost_basis

            self._start_volatility(generation)

            outcome = self._acquire(target, contract_type, on_progress)

            if outcome.status == FetchStatus.SUCCESS:
                try:
                    outcome.rows = self._derive_rows(outcome.quotes, target, contract_type, basis)
                except NoChainFound as exc:
                    logger.warning(f"{exc.message} ({contract_type.value} {target})")
                    outcome.no_chain_found = True
                    outcome.warning_message = outcome.warning_message or exc.message

            self._apply(outcome)
            return outcome
        finally:
            self._fetch_lock.release()

    @staticmethod
    def _derive_rows(
        quotes: List[ContractQuote],
        target_date: str,
        contract_type: ContractType,
        cost_basis: float,
    ) -> List[OptionRow]:
        if not quotes:
            raise NoChainFound(NO_CHAIN_MESSAGE)
        return [
            YieldCalculator.derive_row(
                q.strike, q.premium, target_date, contract_type,
                delta=q.delta, cost_basis=cost_basis, iv=q.iv,
            )
            for q in quotes
        ]

    def _apply(self, outcome: FetchOutcome) -> None:
        with self._state_lock:
            state = self._state
            state.status = outcome.status
            state.warning_message = outcome.warning_message
            state.error_message = outcome.error_message
            if outcome.status == FetchStatus.SUCCESS:
                state.current_price = outcome.current_price
                state.sources = list(outcome.sources)
                state.mode = outcome.mode
                state.book.replace_all(outcome.rows)
                state.scan_message = "Done"
            else:
                state.volatility_loading = False
                logger.error(f"Fetch failed: {outcome.error_message}")

    # ------------------------------------------------------------------
    # Row intents from the presentation layer
    # ------------------------------------------------------------------

    def add_manual_row(self, strike: float, premium: float) -> OptionRow:
        """
        Add a hand-entered contract for the current date/strategy.

        Raises:
            ValueError: non-positive strike or premium
            DuplicateContractError: same strike/expiration/type already listed
        """
        _require_positive(strike, premium)
        with self._state_lock:
            state = self._state
            row = YieldCalculator.derive_row(
                strike, premium, state.target_date, state.contract_type,
                cost_basis=state.cost_basis,
            )
            return state.book.add(row)

    def update_row(
        self,
        row_id: str,
        strike: float,
        premium: float,
        clear: Iterable[str] = (),
    ) -> OptionRow:
        """
        Re-derive an edited row in place.

        Raises:
            ValueError: non-positive strike or premium
            KeyError: unknown row id
            DuplicateContractError: the new strike collides with another row
        """
        _require_positive(strike, premium)
        with self._state_lock:
            return self._state.book.update(
                row_id, strike, premium, cost_basis=self._state.cost_basis, clear=clear,
            )

    def delete_row(self, row_id: str) -> OptionRow:
        with self._state_lock:
            return self._state.book.remove(row_id)

    def spread_for(self, row: OptionRow) -> SpreadMetrics:
        with self._state_lock:
            return SpreadCalculator.derive_spread_leg(
                row, self._state.book.rows, self._state.spread_width
            )
