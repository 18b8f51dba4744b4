"""
Ordered collection of OptionRows keyed by composite contract id.
Backs the dashboard table: add / update / remove intents land here.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

import pandas as pd

from calculations import MoneynessCalculator, SpreadCalculator, YieldCalculator
from config import DEFAULT_SPREAD_WIDTH
from models import ContractType, OptionRow, Strategy

logger = logging.getLogger(__name__)


class DuplicateContractError(ValueError):
    """Raised when a row with the same (strike, expiration, type) already exists."""

    def __init__(self, row_id: str, strike: float):
        self.row_id = row_id
        self.strike = strike
        super().__init__(f"Strike {strike} already exists for this expiration ({row_id})")


class OptionBook:
    """
    Insertion-ordered map of row id -> OptionRow.
    Duplicate checks are O(1) dictionary lookups.
    """

    def __init__(self, rows: Optional[Iterable[OptionRow]] = None):
        self._rows: "OrderedDict[str, OptionRow]" = OrderedDict()
        for row in rows or []:
            self.add(row)

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[OptionRow]:
        return iter(list(self._rows.values()))

    def __contains__(self, row_id: str) -> bool:
        return row_id in self._rows

    @property
    def rows(self) -> List[OptionRow]:
        return list(self._rows.values())

    def get(self, row_id: str) -> Optional[OptionRow]:
        return self._rows.get(row_id)

    def add(self, row: OptionRow) -> OptionRow:
        """Append a row; an identical contract is rejected, never merged."""
        if row.id in self._rows:
            raise DuplicateContractError(row.id, row.strike)
        self._rows[row.id] = row
        return row

    def replace_all(self, rows: Iterable[OptionRow]) -> None:
        """
        Swap in a freshly fetched chain.
        Provider results can repeat a strike; the first occurrence wins.
        """
        self._rows = OrderedDict()
        for row in rows:
            if row.id in self._rows:
                logger.warning(f"Dropping duplicate contract from fetch: {row.id}")
                continue
            self._rows[row.id] = row

    def update(
        self,
        row_id: str,
        strike: float,
        premium: float,
        cost_basis: Optional[float] = None,
        clear: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> OptionRow:
        """
        Re-derive a row from an edited strike/premium, keeping its position.

        delta / iv / win_rate survive the edit unless listed in ``clear``.
        Editing the strike onto another existing contract raises
        DuplicateContractError.
        """
        existing = self._rows.get(row_id)
        if existing is None:
            raise KeyError(row_id)

        updated = YieldCalculator.rederive_row(
            existing, strike, premium, cost_basis=cost_basis, clear=clear, now=now,
        )
        if updated.id != row_id and updated.id in self._rows:
            raise DuplicateContractError(updated.id, updated.strike)

        self._rows = OrderedDict(
            (updated.id, updated) if key == row_id else (key, value)
            for key, value in self._rows.items()
        )
        return updated

    def remove(self, row_id: str) -> OptionRow:
        if row_id not in self._rows:
            raise KeyError(row_id)
        return self._rows.pop(row_id)

    def clear(self) -> None:
        self._rows.clear()

    def to_frame(
        self,
        strategy: Strategy = Strategy.CSP,
        spread_width: float = DEFAULT_SPREAD_WIDTH,
        current_price: Optional[float] = None,
        cost_basis: Optional[float] = None,
    ) -> pd.DataFrame:
        """
        Tabular view for the presentation layer.

        Rows are ordered nearest the money first: puts by strike descending,
        calls ascending. Every row carries its OTM distance (None when ITM)
        and ITM flag. PCS adds the matched long leg and spread metrics; CC
        adds profit-if-called and the below-cost-basis flag. Unavailable
        values are None (rendered as N/A), never 0.
        """
        columns = [
            "id", "strike", "premium", "type", "expiration_date", "dte",
            "annualized_return", "roi", "breakeven", "capital_required",
            "delta", "iv", "win_rate", "distance_pct", "itm",
        ]
        spread_columns = [
            "long_strike", "net_credit", "actual_width", "max_risk",
            "spread_roi", "spread_annualized_return", "width_mismatch",
        ]
        covered_call_columns = ["profit_if_called", "below_cost_basis"]
        if strategy == Strategy.PCS:
            columns = columns + spread_columns
        elif strategy == Strategy.CC:
            columns = columns + covered_call_columns

        rows = self.rows
        ordered = sorted(
            rows,
            key=lambda r: r.strike,
            reverse=Strategy(strategy).contract_type == ContractType.PUT,
        )
        records = []
        for row in ordered:
            record = {
                "id": row.id,
                "strike": row.strike,
                "premium": row.premium,
                "type": row.contract_type.value,
                "expiration_date": row.expiration_date,
                "dte": row.days_to_expiration,
                "annualized_return": row.annualized_return,
                "roi": row.roi,
                "breakeven": row.breakeven,
                "capital_required": row.capital_required,
                "delta": row.delta,
                "iv": row.iv,
                "win_rate": row.win_rate,
                "distance_pct": MoneynessCalculator.distance_to_strike(
                    row.strike, current_price, row.contract_type
                ),
                "itm": MoneynessCalculator.is_itm(row.strike, current_price, row.contract_type),
            }
            if strategy == Strategy.PCS:
                spread = SpreadCalculator.derive_spread_leg(row, rows, spread_width)
                record.update({
                    "long_strike": spread.long_leg.strike if spread.long_leg else None,
                    "net_credit": spread.net_credit,
                    "actual_width": spread.actual_width,
                    "max_risk": spread.max_risk,
                    "spread_roi": spread.spread_roi,
                    "spread_annualized_return": spread.spread_annualized_return,
                    "width_mismatch": spread.width_mismatch,
                })
            elif strategy == Strategy.CC:
                record.update({
                    "profit_if_called": MoneynessCalculator.profit_if_called(
                        row.strike, row.premium, cost_basis
                    ),
                    "below_cost_basis": MoneynessCalculator.below_cost_basis(row.strike, cost_basis),
                })
            records.append(record)

        return pd.DataFrame(records, columns=columns, dtype=object)
