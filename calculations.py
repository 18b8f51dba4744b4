"""
Yield and risk calculations for Yield Hunter
Pure functions only: no network, no Streamlit, no persistence.
"""
import math
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Union

from config import (
    CONTRACT_MULTIPLIER,
    DAYS_PER_YEAR,
    IV_RANK_BUY_THRESHOLD,
    IV_RANK_SELL_THRESHOLD,
    SPREAD_WIDTH_TOLERANCE,
)
from models import (
    ContractType,
    ExpectedMove,
    OptionRow,
    SpreadMetrics,
    VolatilityStatus,
    make_row_id,
)

DateLike = Union[str, date]

# Baseline implied volatility for QQQ (long-run average ~18%)
BASELINE_VOLATILITY = 0.18

# Optional fields a re-derivation never recomputes
CARRIED_FIELDS = ("delta", "iv", "win_rate")


def _expiration_str(expiration_date: DateLike) -> str:
    if isinstance(expiration_date, datetime):
        return expiration_date.date().isoformat()
    if isinstance(expiration_date, date):
        return expiration_date.isoformat()
    return datetime.strptime(str(expiration_date).strip(), "%Y-%m-%d").date().isoformat()


def days_to_expiration(expiration_date: DateLike, now: Optional[datetime] = None) -> int:
    """
    Calendar days until expiration, rounded up and never below 1.

    Expiration is taken as midnight UTC of the expiration date, so a contract
    expiring today (or in the past) still counts as one day.
    """
    exp = datetime.strptime(_expiration_str(expiration_date), "%Y-%m-%d").replace(tzinfo=timezone.utc)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    days = math.ceil((exp - now).total_seconds() / 86400)
    return max(1, days)


def next_friday(today: Optional[date] = None) -> str:
    """Default expiration for weekly options (today when today is a Friday)."""
    today = today or date.today()
    return (today + timedelta(days=(4 - today.weekday()) % 7)).isoformat()


class YieldCalculator:
    """Turn a (strike, premium) pair into an OptionRow with yield metrics"""

    @staticmethod
    def derive_row(
        strike: float,
        premium: float,
        expiration_date: DateLike,
        contract_type: ContractType = ContractType.PUT,
        delta: Optional[float] = None,
        cost_basis: Optional[float] = None,
        iv: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> OptionRow:
        """
        Build an OptionRow from raw contract data.

        Cash-secured put:
            capital = strike * 100, ROI = premium / strike, breakeven = strike - premium
        Covered call:
            basis = cost_basis if > 0 else strike
            capital = basis * 100, ROI = premium / basis, breakeven = basis - premium

        Args:
            strike: Strike price
            premium: Premium received per share
            expiration_date: YYYY-MM-DD string or date
            contract_type: put or call
            delta: Signed delta if the source supplied one
            cost_basis: Share cost basis for covered calls (ignored for puts)
            iv: Implied volatility as a decimal fraction, if known
            now: Clock override (tests)

        Returns:
            OptionRow. win_rate is None when delta is None.

        Raises:
            ValueError: strike or premium is not positive
        """
        if strike <= 0 or premium <= 0:
            raise ValueError("Strike and premium must both be positive")
        contract_type = ContractType(contract_type)
        expiration = _expiration_str(expiration_date)
        dte = days_to_expiration(expiration, now=now)

        if contract_type == ContractType.CALL:
            basis = cost_basis if cost_basis and cost_basis > 0 else strike
        else:
            basis = strike

        capital_required = basis * CONTRACT_MULTIPLIER
        roi = (premium / basis) * 100
        breakeven = basis - premium
        annualized_return = roi * (DAYS_PER_YEAR / dte)

        win_rate = None
        if delta is not None:
            win_rate = (1 - abs(delta)) * 100

        return OptionRow(
            id=make_row_id(strike, expiration, contract_type),
            strike=float(strike),
            premium=float(premium),
            contract_type=contract_type,
            expiration_date=expiration,
            days_to_expiration=dte,
            annualized_return=annualized_return,
            roi=roi,
            breakeven=breakeven,
            capital_required=capital_required,
            delta=delta,
            iv=iv,
            win_rate=win_rate,
        )

    @staticmethod
    def rederive_row(
        row: OptionRow,
        strike: float,
        premium: float,
        cost_basis: Optional[float] = None,
        clear: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> OptionRow:
        """
        Recompute a row after a strike/premium edit.

        Only fields derivable from (strike, premium, expiration, type) are
        overwritten. delta, iv and win_rate are carried over from the
        existing row unless named in ``clear``.
        """
        clear = set(clear)
        unknown = clear - set(CARRIED_FIELDS)
        if unknown:
            raise ValueError(f"Cannot clear non-optional fields: {sorted(unknown)}")

        fresh = YieldCalculator.derive_row(
            strike, premium, row.expiration_date, row.contract_type,
            cost_basis=cost_basis, now=now,
        )
        carried = {
            name: (None if name in clear else getattr(row, name))
            for name in CARRIED_FIELDS
        }
        return replace(fresh, **carried)


class SpreadCalculator:
    """Vertical spread leg matching and spread metrics"""

    @staticmethod
    def find_long_leg(
        short_row: OptionRow,
        rows: Sequence[OptionRow],
        target_width: float,
    ) -> Optional[OptionRow]:
        """
        Pick the protective leg whose strike is closest to short +/- width.

        Puts look strictly below the short strike, calls strictly above.
        Candidates are ordered nearest-to-short first, so equal distances
        resolve to the narrower spread.
        """
        if short_row.contract_type == ContractType.PUT:
            target = short_row.strike - target_width
            candidates = [
                r for r in rows
                if r.contract_type == short_row.contract_type and r.strike < short_row.strike
            ]
        else:
            target = short_row.strike + target_width
            candidates = [
                r for r in rows
                if r.contract_type == short_row.contract_type and r.strike > short_row.strike
            ]

        if not candidates:
            return None

        candidates = sorted(candidates, key=lambda r: abs(short_row.strike - r.strike))
        best = candidates[0]
        best_diff = abs(best.strike - target)
        for candidate in candidates[1:]:
            diff = abs(candidate.strike - target)
            if diff < best_diff:
                best, best_diff = candidate, diff
        return best

    @staticmethod
    def derive_spread_leg(
        short_row: OptionRow,
        rows: Sequence[OptionRow],
        target_width: float,
    ) -> SpreadMetrics:
        """
        Calculate credit spread metrics for a short row.

        Args:
            short_row: The sold contract
            rows: All rows available as long-leg candidates
            target_width: Desired distance between strikes

        Returns:
            SpreadMetrics. With no matching leg every metric is None
            (unavailable), never zero.
        """
        metrics = SpreadMetrics(short_strike=short_row.strike, target_width=target_width)
        long_leg = SpreadCalculator.find_long_leg(short_row, rows, target_width)
        if long_leg is None:
            return metrics

        net_credit = short_row.premium - long_leg.premium
        actual_width = abs(short_row.strike - long_leg.strike)
        max_risk = (actual_width * CONTRACT_MULTIPLIER) - (net_credit * CONTRACT_MULTIPLIER)

        metrics.long_leg = long_leg
        metrics.net_credit = net_credit
        metrics.actual_width = actual_width
        metrics.max_risk = max_risk
        metrics.width_mismatch = abs(actual_width - target_width) > SPREAD_WIDTH_TOLERANCE

        if max_risk > 0:
            metrics.spread_roi = (net_credit * CONTRACT_MULTIPLIER / max_risk) * 100
            metrics.spread_annualized_return = metrics.spread_roi * (
                DAYS_PER_YEAR / short_row.days_to_expiration
            )
        return metrics


class MoneynessCalculator:
    """Where a strike sits against the underlying, and covered-call outcomes"""

    @staticmethod
    def is_itm(strike: float, current_price: Optional[float], contract_type: ContractType) -> bool:
        """Puts are ITM above the price, calls below it. Unknown price -> False."""
        if not current_price:
            return False
        if ContractType(contract_type) == ContractType.CALL:
            return strike < current_price
        return strike > current_price

    @staticmethod
    def distance_to_strike(
        strike: float,
        current_price: Optional[float],
        contract_type: ContractType,
    ) -> Optional[float]:
        """
        Out-of-the-money distance in percent of the underlying price.

        Puts: (price - strike) / price. Calls: (strike - price) / price.
        None for ITM strikes or when the price is unknown.
        """
        if not current_price or current_price <= 0:
            return None
        if MoneynessCalculator.is_itm(strike, current_price, contract_type):
            return None
        if ContractType(contract_type) == ContractType.CALL:
            return (strike - current_price) / current_price * 100
        return (current_price - strike) / current_price * 100

    @staticmethod
    def profit_if_called(strike: float, premium: float, cost_basis: Optional[float]) -> Optional[float]:
        """Per-share gain if the shares are called away: (strike - basis) + premium."""
        if not cost_basis or cost_basis <= 0:
            return None
        return (strike - cost_basis) + premium

    @staticmethod
    def below_cost_basis(strike: float, cost_basis: Optional[float]) -> bool:
        """Selling this call would lock in a loss on the shares."""
        return bool(cost_basis and cost_basis > 0 and strike < cost_basis)


class VolatilityCalculator:
    """IV rank and the sell/neutral/buy signal"""

    @staticmethod
    def iv_rank(current: float, low: float, high: float) -> float:
        """Percentile of current within [low, high], clamped to 0-100. Degenerate range -> 50."""
        if high <= low:
            return 50.0
        rank = ((current - low) / (high - low)) * 100
        return max(0.0, min(100.0, rank))

    @staticmethod
    def iv_status(rank: float) -> VolatilityStatus:
        if rank >= IV_RANK_SELL_THRESHOLD:
            return VolatilityStatus.SELL
        if rank <= IV_RANK_BUY_THRESHOLD:
            return VolatilityStatus.BUY
        return VolatilityStatus.NEUTRAL


class StrikeTargetCalculator:
    """Candidate strikes used to seed provider queries"""

    @staticmethod
    def target_strike_band(
        current_price: float,
        contract_type: ContractType = ContractType.PUT,
    ) -> List[float]:
        """
        Three strikes on a $5 grid starting at the money.

        Puts: price rounded down, then -5 and -10.
        Calls: price rounded up, then +5 and +10.
        """
        if ContractType(contract_type) == ContractType.CALL:
            base = math.ceil(current_price / 5) * 5
            return [float(base), float(base + 5), float(base + 10)]
        base = math.floor(current_price / 5) * 5
        return [float(base), float(base - 5), float(base - 10)]

    @staticmethod
    def expected_move_targets(
        current_price: float,
        expiration_date: DateLike,
        contract_type: ContractType = ContractType.PUT,
        baseline_volatility: float = BASELINE_VOLATILITY,
        now: Optional[datetime] = None,
    ) -> ExpectedMove:
        """
        Square-root-of-time expected move.

        std_dev = price * vol * sqrt(DTE / 365); targets sit 0.5, 1 and 2
        standard deviations out of the money (below price for puts, above
        for calls).
        """
        dte = days_to_expiration(expiration_date, now=now)
        std_dev = current_price * baseline_volatility * math.sqrt(dte / DAYS_PER_YEAR)
        sign = 1 if ContractType(contract_type) == ContractType.CALL else -1

        return ExpectedMove(
            aggressive=current_price + sign * 0.5 * std_dev,
            moderate=current_price + sign * 1.0 * std_dev,
            safe=current_price + sign * 2.0 * std_dev,
            std_dev=std_dev,
            days_to_expiration=dte,
        )
