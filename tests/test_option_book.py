"""Tests for the OptionBook row collection."""
from datetime import datetime, timezone

import pandas as pd
import pytest

from calculations import YieldCalculator
from models import ContractType, Strategy
from option_book import DuplicateContractError, OptionBook

NOW = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)
EXPIRY = "2026-10-23"


def make_row(strike, premium, delta=None, iv=None):
    return YieldCalculator.derive_row(strike, premium, EXPIRY, delta=delta, iv=iv, now=NOW)


@pytest.fixture
def book():
    return OptionBook([make_row(490, 3.00, delta=-0.30, iv=0.21), make_row(485, 1.20), make_row(480, 0.70)])


def test_add_rejects_duplicate(book):
    with pytest.raises(DuplicateContractError) as excinfo:
        book.add(make_row(490, 2.50))
    assert excinfo.value.row_id == "490.0-2026-10-23-put"
    assert len(book) == 3
    assert book.get("490.0-2026-10-23-put").premium == 3.00


def test_replace_all_keeps_first_occurrence():
    book = OptionBook()
    book.replace_all([make_row(490, 3.00), make_row(490, 9.99), make_row(485, 1.20)])
    assert [r.strike for r in book] == [490.0, 485.0]
    assert book.rows[0].premium == 3.00


def test_update_preserves_optional_fields_and_position(book):
    updated = book.update("490.0-2026-10-23-put", 495, 4.00, now=NOW)

    assert updated.id == "495.0-2026-10-23-put"
    assert updated.delta == -0.30
    assert updated.iv == 0.21
    assert updated.win_rate == pytest.approx(70.0)
    assert [r.strike for r in book] == [495.0, 485.0, 480.0]
    assert "490.0-2026-10-23-put" not in book


def test_update_onto_existing_strike_raises(book):
    with pytest.raises(DuplicateContractError):
        book.update("490.0-2026-10-23-put", 485, 2.00, now=NOW)
    assert len(book) == 3
    assert "490.0-2026-10-23-put" in book


def test_update_same_strike_new_premium(book):
    updated = book.update("485.0-2026-10-23-put", 485, 1.40, now=NOW)
    assert updated.premium == 1.40
    assert book.get("485.0-2026-10-23-put").premium == 1.40


@pytest.mark.parametrize("strike, premium", [(0, 3.00), (490, -5.00)])
def test_update_rejects_non_positive_values(book, strike, premium):
    with pytest.raises(ValueError):
        book.update("490.0-2026-10-23-put", strike, premium, now=NOW)
    assert book.get("490.0-2026-10-23-put").premium == 3.00
    assert len(book) == 3


def test_update_and_remove_missing_row(book):
    with pytest.raises(KeyError):
        book.update("nope", 490, 1.0)
    with pytest.raises(KeyError):
        book.remove("nope")


def test_remove_and_clear(book):
    removed = book.remove("485.0-2026-10-23-put")
    assert removed.strike == 485.0
    assert len(book) == 2

    book.clear()
    assert len(book) == 0
    assert book.rows == []


def test_to_frame_csp_columns(book):
    df = book.to_frame(Strategy.CSP)
    assert list(df["strike"]) == [490.0, 485.0, 480.0]
    assert "net_credit" not in df.columns
    assert df.loc[1, "delta"] is None or pd.isna(df.loc[1, "delta"])


def test_to_frame_pcs_adds_spread_columns(book):
    df = book.to_frame(Strategy.PCS, spread_width=5)

    first = df.iloc[0]
    assert first["long_strike"] == 485.0
    assert first["net_credit"] == pytest.approx(1.80)
    assert first["max_risk"] == pytest.approx(320.0)
    assert first["spread_roi"] == pytest.approx(56.25)
    assert bool(first["width_mismatch"]) is False

    last = df.iloc[2]
    assert last["long_strike"] is None or pd.isna(last["long_strike"])
    assert last["spread_roi"] is None or pd.isna(last["spread_roi"])


def test_to_frame_empty():
    df = OptionBook().to_frame(Strategy.PCS)
    assert df.empty
    assert "spread_roi" in df.columns


def test_to_frame_orders_puts_by_strike_descending(book):
    book.add(make_row(495, 4.10))
    df = book.to_frame(Strategy.CSP)
    assert list(df["strike"]) == [495.0, 490.0, 485.0, 480.0]
    assert [r.strike for r in book] == [490.0, 485.0, 480.0, 495.0]


def test_to_frame_distance_and_itm_flag(book):
    book.add(make_row(505, 7.50))
    df = book.to_frame(Strategy.CSP, current_price=500.0)

    assert list(df["strike"]) == [505.0, 490.0, 485.0, 480.0]
    assert df["itm"].tolist() == [True, False, False, False]
    assert df.loc[0, "distance_pct"] is None
    assert df.loc[1, "distance_pct"] == pytest.approx(2.0)
    assert df.loc[3, "distance_pct"] == pytest.approx(4.0)


def test_to_frame_without_price_has_no_distance(book):
    df = book.to_frame(Strategy.CSP)
    assert df["distance_pct"].tolist() == [None, None, None]
    assert df["itm"].tolist() == [False, False, False]


def test_to_frame_covered_call_columns():
    calls = OptionBook([
        YieldCalculator.derive_row(strike, premium, EXPIRY, ContractType.CALL, cost_basis=480.0, now=NOW)
        for strike, premium in ((510, 1.10), (470, 31.00), (500, 3.20))
    ])

    df = calls.to_frame(Strategy.CC, current_price=500.0, cost_basis=480.0)

    assert list(df["strike"]) == [470.0, 500.0, 510.0]
    assert "net_credit" not in df.columns
    assert df["profit_if_called"].tolist() == pytest.approx([21.00, 23.20, 31.10])
    assert df["below_cost_basis"].tolist() == [True, False, False]
    assert df["itm"].tolist() == [True, False, False]
    assert df.loc[2, "distance_pct"] == pytest.approx(2.0)
