"""
Portfolio model and simulator for backtesting.

**Conceptual**: This module implements the simulated brokerage account a
backtest trades against. The simulator accepts a target allocation, turns
the difference between current and target holdings into orders, fills them
at the supplied execution prices, charges commission (and optional
slippage), and keeps cash, positions and average costs up to date. No real
money changes hands; it is "paper" trading.

**Financial assumptions** (documented for reproducibility):
  - Long-only: positions are never negative; sells are clamped to the
    quantity held.
  - Whole shares only: target quantities round toward zero, and the cash
    remainder stays in cash.
  - No leverage: a buy is shrunk to what cash can pay for including
    commission, so cash never goes below zero.
  - Commission per trade: max(minimum_commission, commission_rate * notional),
    capped at maximum_commission when one is set.
  - Slippage (optional, symmetric): buys fill at price * (1 + bps/10000),
    sells at price * (1 - bps/10000).
  - Sells are executed before buys, so freed cash funds the new positions.
  - Average cost is the quantity-weighted average of buy fill prices;
    realized P&L on a sell is (fill - average_cost) * quantity - commission.

**Cash conservation**: for every rebalance,
    cash_after + Σ notional_bought = cash_before + Σ notional_sold - Σ commission
holds exactly (notional = quantity * filled_price).

**Invariant checks**: after each fill the simulator verifies cash >= 0 and
quantity >= 0 and raises InternalInvariantError otherwise. A violation means
a simulator bug and is never silently corrected.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

import pandas as pd

from factorlab.strategies.base import TargetAllocation
from factorlab.utils.errors import InternalInvariantError

logger = logging.getLogger(__name__)


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass
class Position:
    """
    A long holding in a single instrument.

    Attributes:
        symbol: Instrument symbol.
        quantity: Whole shares held (> 0 while the position exists).
        average_cost: Quantity-weighted average buy fill price.
        last_price: Last known price, used to value the position.
        opened_at: Timestamp of the buy that opened the position.
    """
    symbol: str
    quantity: int
    average_cost: float
    last_price: float
    opened_at: Optional[pd.Timestamp] = None

    @property
    def market_value(self) -> float:
        """quantity * last_price."""
        return self.quantity * self.last_price

    @property
    def unrealized_pnl(self) -> float:
        return (self.last_price - self.average_cost) * self.quantity


@dataclass(frozen=True)
class Order:
    """
    An instruction to transact, immutable once created.

    Attributes:
        symbol: Instrument symbol.
        side: BUY or SELL.
        quantity: Whole shares (> 0).
        requested_price: Execution price before slippage.
        timestamp: When the order is to be filled.
    """
    symbol: str
    side: OrderSide
    quantity: int
    requested_price: float
    timestamp: pd.Timestamp

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Order quantity must be positive, got {self.quantity} for {self.symbol}")
        if self.requested_price <= 0:
            raise ValueError(
                f"Order price must be positive, got {self.requested_price} for {self.symbol}"
            )


@dataclass(frozen=True)
class Trade:
    """
    Record of a filled order.

    Attributes:
        trade_id: Per-run sequential id ("T000001", ...).
        symbol, side, quantity, requested_price: Copied from the order
            (quantity may be lower than ordered if a sell was clamped or a
            buy was shrunk to fit cash).
        filled_price: Price actually paid or received (> 0).
        timestamp: Fill timestamp.
        commission: Commission charged.
        realized_pnl: (filled_price - average_cost) * quantity - commission
            on sells; None on buys.
        holding_period_days: Calendar days since the position opened, on
            sells; None on buys.
    """
    trade_id: str
    symbol: str
    side: OrderSide
    quantity: int
    requested_price: float
    filled_price: float
    timestamp: pd.Timestamp
    commission: float
    realized_pnl: Optional[float] = None
    holding_period_days: Optional[int] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.filled_price

    def to_dict(self) -> dict:
        return {
            "id": self.trade_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "requestedPrice": self.requested_price,
            "filledPrice": self.filled_price,
            "timestamp": self.timestamp.isoformat(),
            "commission": self.commission,
            "realizedPnl": self.realized_pnl,
            "holdingPeriodDays": self.holding_period_days,
        }


@dataclass
class Portfolio:
    """
    Running simulation state: cash plus positions.

    Created once per backtest run with the initial capital as cash, mutated
    only by the PortfolioSimulator, discarded at run end.
    """
    cash: float
    positions: Dict[str, Position] = field(default_factory=dict)

    @classmethod
    def create(cls, initial_cash: float) -> "Portfolio":
        """
        Start a portfolio with all cash and no positions.

        Raises:
            ValueError: If initial_cash <= 0.
        """
        if initial_cash <= 0:
            raise ValueError(f"initial_cash must be positive, got {initial_cash}")
        return cls(cash=float(initial_cash))

    @property
    def positions_value(self) -> float:
        return sum(position.market_value for position in self.positions.values())

    @property
    def total_value(self) -> float:
        """cash + Σ quantity * last known price."""
        return self.cash + self.positions_value

    def quantity(self, symbol: str) -> int:
        position = self.positions.get(symbol)
        return position.quantity if position else 0

    def weights(self) -> Dict[str, float]:
        """Current weight of every held symbol in total value."""
        total = self.total_value
        if total <= 0:
            return {}
        return {symbol: p.market_value / total for symbol, p in sorted(self.positions.items())}


@dataclass
class RebalanceOutcome:
    """Orders generated and trades filled by one rebalance."""
    orders: List[Order] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    cash_before: float = 0.0
    cash_after: float = 0.0

    @property
    def commission(self) -> float:
        return sum(trade.commission for trade in self.trades)


class PortfolioSimulator:
    """
    Executes target allocations against a Portfolio.

    One simulator belongs to one run: it owns that run's trade-id sequence
    and is never shared between runs.

    Args:
        commission_rate: Commission as a fraction of notional (0.001 = 10 bps).
        minimum_commission: Per-trade commission floor in dollars.
        slippage_bps: Symmetric slippage in basis points.
        maximum_commission: Optional per-trade commission ceiling in dollars
            (>= minimum_commission). None means uncapped.

    Raises:
        ValueError: If any cost parameter is negative, or the ceiling is
            below the floor.
    """

    def __init__(
        self,
        commission_rate: float = 0.001,
        minimum_commission: float = 0.0,
        slippage_bps: float = 0.0,
        maximum_commission: Optional[float] = None,
    ):
        if commission_rate < 0 or minimum_commission < 0 or slippage_bps < 0:
            raise ValueError(
                "commission_rate, minimum_commission and slippage_bps must be non-negative, got "
                f"{commission_rate}, {minimum_commission}, {slippage_bps}"
            )
        if maximum_commission is not None and maximum_commission < minimum_commission:
            raise ValueError(
                f"maximum_commission ({maximum_commission}) must be >= "
                f"minimum_commission ({minimum_commission})"
            )
        self.commission_rate = commission_rate
        self.minimum_commission = minimum_commission
        self.maximum_commission = maximum_commission
        self.slippage_bps = slippage_bps
        self._trade_sequence = 0

    def compute_commission(self, notional: float) -> float:
        """
        Commission charged on one fill of `notional` dollars.

        **Mathematical**:
            commission = min(max(minimum, rate * notional), maximum)
        with no ceiling when maximum_commission is None.
        """
        commission = max(self.minimum_commission, self.commission_rate * notional)
        if self.maximum_commission is not None:
            commission = min(commission, self.maximum_commission)
        return commission

    def fill_price(self, side: OrderSide, price: float) -> float:
        """Execution price after slippage for `side`."""
        adjustment = self.slippage_bps / 10000.0
        if side == OrderSide.BUY:
            return price * (1.0 + adjustment)
        return price * (1.0 - adjustment)

    def mark_to_market(self, portfolio: Portfolio, prices: Mapping[str, float]) -> None:
        """
        Update last known prices of held positions.

        Symbols missing from `prices` keep their previous price.
        """
        for symbol, position in portfolio.positions.items():
            price = prices.get(symbol)
            if price is not None:
                position.last_price = float(price)

    def rebalance(
        self,
        portfolio: Portfolio,
        target: TargetAllocation,
        execution_prices: Mapping[str, float],
        timestamp: pd.Timestamp,
    ) -> RebalanceOutcome:
        """
        Move the portfolio from its current holdings toward `target`.

        **Step by step**:
          1. Mark held positions at the execution prices.
          2. total_value = cash + Σ quantity * price.
          3. For every symbol held or targeted that has an execution price:
             target_qty = int(weight * total_value / price)  (toward zero).
             Held symbols absent from the target have weight 0.
          4. Sell (current - target_qty) where positive, in symbol order.
          5. Buy (target_qty - current) where positive, in ranking order,
             each shrunk to what the remaining cash can pay for.

        Symbols without an execution price (no bar at this timestamp) are
        left untouched.

        Args:
            portfolio: Portfolio to mutate in place.
            target: Desired allocation.
            execution_prices: Mapping symbol -> execution price at `timestamp`
                              (taken from the bars at that timestamp).
            timestamp: Fill timestamp recorded on orders and trades.

        Returns:
            RebalanceOutcome with the orders and the trades they produced.

        Raises:
            InternalInvariantError: If a fill leaves cash or quantity negative.
        """
        outcome = RebalanceOutcome(cash_before=portfolio.cash)
        self.mark_to_market(portfolio, execution_prices)
        total_value = portfolio.total_value

        candidates = set(target.weights) | set(portfolio.positions)
        target_quantities: Dict[str, int] = {}
        for symbol in candidates:
            price = execution_prices.get(symbol)
            if price is None or price <= 0:
                logger.debug("No execution price for %s at %s; leaving it untouched", symbol, timestamp)
                continue
            weight = target.weights.get(symbol, 0.0)
            target_quantities[symbol] = int(weight * total_value / price)

        # Sells first, so freed cash is available to buys
        for symbol in sorted(target_quantities):
            excess = portfolio.quantity(symbol) - target_quantities[symbol]
            if excess > 0:
                order = Order(symbol, OrderSide.SELL, excess, float(execution_prices[symbol]), timestamp)
                self._record(outcome, order, self.execute_order(portfolio, order))

        buy_order = list(target.ranking) + sorted(set(target.weights) - set(target.ranking))
        for symbol in buy_order:
            if symbol not in target_quantities:
                continue
            shortfall = target_quantities[symbol] - portfolio.quantity(symbol)
            if shortfall <= 0:
                continue
            price = float(execution_prices[symbol])
            quantity = min(shortfall, self.max_affordable_quantity(portfolio.cash, price))
            if quantity <= 0:
                logger.debug("Insufficient cash to buy %s at %.4f on %s", symbol, price, timestamp)
                continue
            order = Order(symbol, OrderSide.BUY, quantity, price, timestamp)
            self._record(outcome, order, self.execute_order(portfolio, order))

        outcome.cash_after = portfolio.cash
        return outcome

    def max_affordable_quantity(self, cash: float, price: float) -> int:
        """
        Largest whole quantity whose fill notional plus commission fits in `cash`.

        **Mathematical**: with fill price p and rate r, quantity q needs
            q * p * (1 + r) <= cash   and   q * p + minimum <= cash
        or, once the ceiling M binds, q * p + M <= cash.
        The closed form gives a starting point; a short downward scan absorbs
        floating-point rounding.
        """
        fill = self.fill_price(OrderSide.BUY, price)
        if cash <= 0 or fill <= 0:
            return 0
        candidate = cash / (fill * (1.0 + self.commission_rate))
        if self.maximum_commission is not None:
            candidate = max(candidate, (cash - self.maximum_commission) / fill)
        quantity = int(min(candidate, (cash - self.minimum_commission) / fill))
        while quantity > 0 and quantity * fill + self.compute_commission(quantity * fill) > cash:
            quantity -= 1
        return max(quantity, 0)

    def execute_order(self, portfolio: Portfolio, order: Order) -> Optional[Trade]:
        """
        Fill a single order against the portfolio.

        Sells larger than the holding are clamped to the holding; a sell of a
        symbol not held is rejected (returns None). Buys larger than cash
        allows are shrunk; a buy that cannot afford one share is rejected.

        Returns:
            The Trade, or None if the order was rejected.

        Raises:
            InternalInvariantError: If the fill leaves cash or quantity negative.
        """
        if order.side == OrderSide.SELL:
            trade = self._execute_sell(portfolio, order)
        else:
            trade = self._execute_buy(portfolio, order)
        if trade is not None:
            self._check_invariants(portfolio, trade)
        return trade

    def close_all(
        self,
        portfolio: Portfolio,
        prices: Mapping[str, float],
        timestamp: pd.Timestamp,
    ) -> RebalanceOutcome:
        """Sell every holding that has a price (equivalent to an empty target)."""
        return self.rebalance(portfolio, TargetAllocation(), prices, timestamp)

    # ========================================================================
    # Internal helper methods
    # ========================================================================

    def _next_trade_id(self) -> str:
        self._trade_sequence += 1
        return f"T{self._trade_sequence:06d}"

    @staticmethod
    def _record(outcome: RebalanceOutcome, order: Order, trade: Optional[Trade]) -> None:
        outcome.orders.append(order)
        if trade is not None:
            outcome.trades.append(trade)

    def _execute_sell(self, portfolio: Portfolio, order: Order) -> Optional[Trade]:
        position = portfolio.positions.get(order.symbol)
        if position is None or position.quantity <= 0:
            logger.warning("Rejected sell of %s: no position held", order.symbol)
            return None

        quantity = min(order.quantity, position.quantity)
        if quantity < order.quantity:
            logger.warning(
                "Clamped sell of %s from %d to held quantity %d",
                order.symbol, order.quantity, quantity,
            )

        filled = self.fill_price(OrderSide.SELL, order.requested_price)
        notional = quantity * filled
        commission = self.compute_commission(notional)
        realized = (filled - position.average_cost) * quantity - commission
        holding_days = None
        if position.opened_at is not None:
            holding_days = int((order.timestamp - position.opened_at).days)

        portfolio.cash += notional - commission
        position.quantity -= quantity
        position.last_price = order.requested_price
        if position.quantity == 0:
            del portfolio.positions[order.symbol]

        return Trade(
            trade_id=self._next_trade_id(),
            symbol=order.symbol,
            side=OrderSide.SELL,
            quantity=quantity,
            requested_price=order.requested_price,
            filled_price=filled,
            timestamp=order.timestamp,
            commission=commission,
            realized_pnl=realized,
            holding_period_days=holding_days,
        )

    def _execute_buy(self, portfolio: Portfolio, order: Order) -> Optional[Trade]:
        quantity = min(order.quantity, self.max_affordable_quantity(portfolio.cash, order.requested_price))
        if quantity <= 0:
            logger.warning("Rejected buy of %s: cash %.2f cannot cover one share", order.symbol, portfolio.cash)
            return None

        filled = self.fill_price(OrderSide.BUY, order.requested_price)
        notional = quantity * filled
        commission = self.compute_commission(notional)

        portfolio.cash -= notional + commission
        position = portfolio.positions.get(order.symbol)
        if position is None:
            portfolio.positions[order.symbol] = Position(
                symbol=order.symbol,
                quantity=quantity,
                average_cost=filled,
                last_price=order.requested_price,
                opened_at=order.timestamp,
            )
        else:
            new_quantity = position.quantity + quantity
            position.average_cost = (
                position.average_cost * position.quantity + filled * quantity
            ) / new_quantity
            position.quantity = new_quantity
            position.last_price = order.requested_price

        return Trade(
            trade_id=self._next_trade_id(),
            symbol=order.symbol,
            side=OrderSide.BUY,
            quantity=quantity,
            requested_price=order.requested_price,
            filled_price=filled,
            timestamp=order.timestamp,
            commission=commission,
        )

    @staticmethod
    def _check_invariants(portfolio: Portfolio, trade: Trade) -> None:
        if portfolio.cash < 0:
            logger.error("Cash went negative (%.6f) after trade %s", portfolio.cash, trade.trade_id)
            raise InternalInvariantError(
                f"Cash went negative ({portfolio.cash:.6f}) after {trade.side.value} "
                f"{trade.quantity} {trade.symbol} ({trade.trade_id})"
            )
        position = portfolio.positions.get(trade.symbol)
        if position is not None and position.quantity < 0:
            logger.error("Negative quantity for %s after trade %s", trade.symbol, trade.trade_id)
            raise InternalInvariantError(
                f"Position quantity for {trade.symbol} went negative ({position.quantity})"
            )
