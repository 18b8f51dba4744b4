"""Tests for the acquisition orchestrator (YieldHunterService)."""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from market_data.errors import KeyInvalid, NetworkFailure, PriceUnavailable
from market_data.models import (
    MODE_AI_SEARCH,
    MODE_SNAPSHOT,
    AcquisitionResult,
    ContractQuote,
    KeyValidation,
    Source,
    VolatilityMetrics,
)
from market_data.service import (
    NO_CHAIN_MESSAGE,
    NO_SOURCE_MESSAGE,
    FetchInProgressError,
    YieldHunterService,
)
from models import ContractType, FetchStatus, Strategy, VolatilityStatus
from option_book import DuplicateContractError

POLYGON_KEY = "poly_key_123"
GEMINI_KEY = "gemini_key_123"


class ImmediateExecutor:
    """Runs submitted work inline so volatility lands before fetch() returns."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait=True):
        pass


def polygon_result(*quotes, price=500.0):
    return AcquisitionResult(
        current_price=price,
        quotes=list(quotes),
        sources=[Source("https://polygon.io", "Polygon.io API (Snapshot)")],
        mode=MODE_SNAPSHOT,
    )


def gemini_result(*quotes, price=499.0):
    return AcquisitionResult(
        current_price=price,
        quotes=list(quotes),
        sources=[Source("https://finance.example", "Yahoo")],
        mode=MODE_AI_SEARCH,
    )


def make_service(polygon=None, gemini=None, polygon_key=POLYGON_KEY, gemini_key=GEMINI_KEY, executor=None):
    polygon = polygon or MagicMock()
    gemini = gemini or MagicMock()
    if not isinstance(gemini.fetch_volatility.side_effect, Exception):
        gemini.fetch_volatility.return_value = None
    polygon_factory = MagicMock(return_value=polygon)
    gemini_factory = MagicMock(return_value=gemini)
    service = YieldHunterService(
        polygon_key=polygon_key,
        gemini_key=gemini_key,
        polygon_factory=polygon_factory,
        gemini_factory=gemini_factory,
        executor=executor or ImmediateExecutor(),
    )
    return service, polygon_factory, gemini_factory


def test_no_keys_is_fatal_without_network_calls():
    service, polygon_factory, gemini_factory = make_service(polygon_key="", gemini_key="")

    outcome = service.fetch()

    assert outcome.status == FetchStatus.ERROR
    assert outcome.error_message == NO_SOURCE_MESSAGE
    assert outcome.needs_key_setup is True
    polygon_factory.assert_not_called()
    gemini_factory.assert_not_called()
    assert service.state.status == FetchStatus.ERROR


def test_short_polygon_key_counts_as_missing():
    gemini = MagicMock()
    gemini.fetch.return_value = gemini_result(ContractQuote(490, 2.0))
    service, polygon_factory, _ = make_service(gemini=gemini, polygon_key="abc")

    outcome = service.fetch()

    polygon_factory.assert_not_called()
    assert outcome.provider == "gemini"
    assert outcome.warning_message == ""


def test_polygon_success_populates_state():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(
        ContractQuote(490, 3.00, iv=0.21, delta=-0.30),
        ContractQuote(485, 1.20, iv=0.23, delta=-0.20),
    )
    service, _, gemini_factory = make_service(polygon=polygon)
    progress = []

    outcome = service.fetch(strategy=Strategy.CSP, on_progress=progress.append)

    assert outcome.status == FetchStatus.SUCCESS
    assert outcome.provider == "polygon"
    assert [r.strike for r in outcome.rows] == [490.0, 485.0]
    assert outcome.rows[0].win_rate == pytest.approx(70.0)
    polygon.fetch.assert_called_once_with(service.state.target_date, ContractType.PUT)
    gemini_factory.return_value.fetch.assert_not_called()

    state = service.state
    assert state.status == FetchStatus.SUCCESS
    assert state.current_price == 500.0
    assert state.mode == MODE_SNAPSHOT
    assert len(state.book) == 2
    assert state.scan_message == "Done"
    assert progress == ["Connecting to Polygon data feed..."]


def test_polygon_failure_with_gemini_key_falls_back():
    polygon = MagicMock()
    polygon.fetch.side_effect = PriceUnavailable("Polygon returned no QQQ price data")
    gemini = MagicMock()

    def gemini_fetch(target_date, on_progress, contract_type):
        on_progress("Scanning StockAnalysis.com...")
        return gemini_result(ContractQuote(490, 2.50))

    gemini.fetch.side_effect = gemini_fetch
    service, _, _ = make_service(polygon=polygon, gemini=gemini)
    progress = []

    outcome = service.fetch(on_progress=progress.append)

    assert outcome.status == FetchStatus.SUCCESS
    assert outcome.provider == "gemini"
    assert outcome.mode == MODE_AI_SEARCH
    assert outcome.warning_message == (
        "Polygon API warning: Polygon returned no QQQ price data. Switching to AI search..."
    )
    assert outcome.error_message == ""
    assert service.state.warning_message == outcome.warning_message
    assert service.state.current_price == 499.0
    assert progress == [
        "Connecting to Polygon data feed...",
        "Polygon failed, switching to Gemini AI search...",
        "Scanning StockAnalysis.com...",
    ]


def test_polygon_failure_without_gemini_key_is_fatal():
    polygon = MagicMock()
    polygon.fetch.side_effect = KeyInvalid("Polygon rejected the API key (401)")
    service, _, gemini_factory = make_service(polygon=polygon, gemini_key="")

    outcome = service.fetch()

    assert outcome.status == FetchStatus.ERROR
    assert outcome.error_message == (
        "Polygon error: Polygon rejected the API key (401). "
        "(No Gemini key configured, cannot switch to AI search)"
    )
    assert outcome.needs_key_setup is True
    gemini_factory.assert_not_called()


def test_gemini_failure_after_fallback_keeps_both_messages():
    polygon = MagicMock()
    polygon.fetch.side_effect = NetworkFailure("timeout")
    gemini = MagicMock()
    gemini.fetch.side_effect = PriceUnavailable("Could not retrieve QQQ price from any source.")
    service, _, _ = make_service(polygon=polygon, gemini=gemini)

    outcome = service.fetch()

    assert outcome.status == FetchStatus.ERROR
    assert outcome.warning_message.startswith("Polygon API warning: timeout.")
    assert outcome.error_message == "Could not retrieve QQQ price from any source."
    assert outcome.needs_key_setup is False
    assert service.state.error_message == outcome.error_message


def test_gemini_key_rejected_asks_for_setup():
    gemini = MagicMock()
    gemini.fetch.side_effect = KeyInvalid("API key not valid")
    service, _, _ = make_service(gemini=gemini, polygon_key="")

    outcome = service.fetch()

    assert outcome.status == FetchStatus.ERROR
    assert outcome.needs_key_setup is True


def test_price_without_chain_flags_no_chain_found():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result()
    service, _, _ = make_service(polygon=polygon)

    outcome = service.fetch()

    assert outcome.status == FetchStatus.SUCCESS
    assert outcome.no_chain_found is True
    assert outcome.warning_message == NO_CHAIN_MESSAGE
    assert service.state.current_price == 500.0
    assert len(service.state.book) == 0


def test_covered_call_uses_calls_and_cost_basis():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(ContractQuote(505, 2.00))
    service, _, _ = make_service(polygon=polygon)

    outcome = service.fetch(strategy=Strategy.CC, cost_basis=450)

    polygon.fetch.assert_called_once_with(service.state.target_date, ContractType.CALL)
    row = outcome.rows[0]
    assert row.contract_type == ContractType.CALL
    assert row.capital_required == pytest.approx(45000)
    assert row.breakeven == pytest.approx(448.0)


def test_overlapping_fetch_is_rejected():
    polygon = MagicMock()
    service, _, _ = make_service(polygon=polygon)
    seen = []

    def reentrant_fetch(target_date, contract_type):
        with pytest.raises(FetchInProgressError):
            service.fetch()
        seen.append(True)
        return polygon_result(ContractQuote(490, 3.00))

    polygon.fetch.side_effect = reentrant_fetch

    outcome = service.fetch()

    assert seen == [True]
    assert outcome.status == FetchStatus.SUCCESS
    assert len(service.state.book) == 1


def test_volatility_failure_never_surfaces():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(ContractQuote(490, 3.00))
    gemini = MagicMock()
    gemini.fetch_volatility.side_effect = RuntimeError("search quota exhausted")
    executor = ThreadPoolExecutor(max_workers=1)
    service, _, _ = make_service(polygon=polygon, gemini=gemini, executor=executor)

    try:
        outcome = service.fetch()
        assert service.wait_for_volatility(timeout=5) is None
    finally:
        executor.shutdown(wait=True)

    assert outcome.status == FetchStatus.SUCCESS
    assert outcome.error_message == ""
    assert service.state.error_message == ""
    assert service.state.volatility_loading is False


def test_fetch_returns_before_volatility_arrives():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(ContractQuote(490, 3.00))
    gemini = MagicMock()
    metrics = VolatilityMetrics(current=25.0, high=35.0, low=15.0, rank=50.0, status=VolatilityStatus.SELL)
    released = threading.Event()

    def slow_volatility():
        released.wait(timeout=5)
        return metrics

    gemini.fetch_volatility.side_effect = slow_volatility
    executor = ThreadPoolExecutor(max_workers=1)
    service, _, _ = make_service(polygon=polygon, gemini=gemini, executor=executor)

    try:
        outcome = service.fetch()

        assert outcome.status == FetchStatus.SUCCESS
        assert len(service.state.book) == 1
        assert service.state.volatility_loading is True
        assert service.state.volatility is None

        released.set()
        assert service.wait_for_volatility(timeout=5) is metrics
        assert service.state.volatility_loading is False
    finally:
        released.set()
        executor.shutdown(wait=True)


def test_volatility_is_cached_between_fetches():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(ContractQuote(490, 3.00))
    gemini = MagicMock()
    metrics = VolatilityMetrics(current=25.0, high=35.0, low=15.0, rank=50.0, status=VolatilityStatus.SELL)
    executor = ImmediateExecutor()
    service, _, _ = make_service(polygon=polygon, gemini=gemini, executor=executor)
    gemini.fetch_volatility.return_value = metrics

    service.fetch()
    assert service.wait_for_volatility() is metrics
    service.fetch()

    assert service.state.volatility is metrics
    assert gemini.fetch_volatility.call_count == 1
    assert executor.submitted == 1

    service.set_keys(gemini_key="another_gemini_key")
    service.fetch()
    assert gemini.fetch_volatility.call_count == 2


def test_no_volatility_fetch_without_gemini_key():
    polygon = MagicMock()
    polygon.fetch.return_value = polygon_result(ContractQuote(490, 3.00))
    executor = ImmediateExecutor()
    service, _, gemini_factory = make_service(polygon=polygon, gemini_key="", executor=executor)

    service.fetch()

    assert executor.submitted == 0
    assert service.state.volatility is None
    gemini_factory.assert_not_called()


class TestRowIntents:

    @pytest.fixture
    def service(self):
        polygon = MagicMock()
        polygon.fetch.return_value = polygon_result(
            ContractQuote(490, 3.00, iv=0.21, delta=-0.30),
            ContractQuote(485, 1.20),
        )
        service, _, _ = make_service(polygon=polygon)
        service.fetch()
        return service

    def test_add_manual_row(self, service):
        row = service.add_manual_row(480, 0.70)
        assert row.delta is None
        assert row.win_rate is None
        assert len(service.state.book) == 3

    def test_add_manual_duplicate_rejected(self, service):
        with pytest.raises(DuplicateContractError):
            service.add_manual_row(490, 2.00)
        assert len(service.state.book) == 2

    @pytest.mark.parametrize("strike, premium", [(0, 1.0), (490, 0), (-5, 1.0), (None, 1.0)])
    def test_add_manual_requires_positive_values(self, service, strike, premium):
        with pytest.raises(ValueError):
            service.add_manual_row(strike, premium)

    def test_update_keeps_greeks(self, service):
        row_id = service.state.book.rows[0].id
        updated = service.update_row(row_id, 490, 3.40)
        assert updated.premium == 3.40
        assert updated.delta == -0.30
        assert updated.iv == 0.21

    @pytest.mark.parametrize("strike, premium", [(0, 3.0), (490, -5.0), (490, 0)])
    def test_update_requires_positive_values(self, service, strike, premium):
        row = service.state.book.rows[0]
        with pytest.raises(ValueError):
            service.update_row(row.id, strike, premium)
        assert service.state.book.rows[0] == row
        assert len(service.state.book) == 2

    def test_delete_row(self, service):
        row_id = service.state.book.rows[1].id
        service.delete_row(row_id)
        assert row_id not in service.state.book

    def test_spread_for_uses_configured_width(self, service):
        service.configure(strategy=Strategy.PCS, spread_width=5)
        spread = service.spread_for(service.state.book.rows[0])
        assert spread.net_credit == pytest.approx(1.80)
        assert spread.max_risk == pytest.approx(320.0)

    def test_new_fetch_replaces_rows(self, service):
        service.add_manual_row(480, 0.70)
        service.fetch()
        assert len(service.state.book) == 2


def test_validate_polygon_key_without_key():
    service, polygon_factory, _ = make_service(polygon_key="")
    check = service.validate_polygon_key()
    assert check.valid is False
    assert check.message == "No key entered"
    polygon_factory.assert_not_called()


def test_validate_polygon_key_uses_stripped_key():
    service, polygon_factory, _ = make_service(polygon_key="  poly_key_123 ")
    polygon_factory.return_value.validate_key.return_value = KeyValidation(True, "Key is valid!", 200)

    check = service.validate_polygon_key()

    assert check.valid is True
    polygon_factory.assert_called_once_with("poly_key_123")
