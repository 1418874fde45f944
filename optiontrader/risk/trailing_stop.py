"""Trailing stop — ATR-based progressive SL management for open positions.

Rules:
  - Activates once price has moved ``activation × ATR`` in the favourable
    direction from entry (ATR captured at entry).
  - While active, SL trails ``trail × ATR`` behind the best price seen.
  - SL only ever tightens.
"""

from typing import Optional

from optiontrader.strategy.models import PE, Position


class AtrTrailingStop:
    """Updates the stop of a position in place.

    Args:
        activation_atr_multiple: Favourable move (in ATRs) that arms the trail.
        trail_atr_multiple: Distance (in ATRs) kept behind the best price.
    """

    def __init__(
        self,
        activation_atr_multiple: float = 1.0,
        trail_atr_multiple: float = 1.0,
    ) -> None:
        if activation_atr_multiple < 0 or trail_atr_multiple <= 0:
            raise ValueError("ATR multiples must be positive")
        self.activation = activation_atr_multiple
        self.trail = trail_atr_multiple

    def update(self, position: Position, price: float) -> Optional[float]:
        """Evaluate *price* and return the new SL if it moved, else ``None``."""
        atr = position.atr_at_entry
        if not atr or atr <= 0:
            return None

        if position.option_type == PE:
            best = min(position.best_price or position.entry_price, price)
            position.best_price = best
            if not position.trailing_active:
                if position.entry_price - best < self.activation * atr:
                    return None
                position.trailing_active = True
            new_sl = round(best + self.trail * atr, 2)
            if new_sl < position.stop_loss:
                position.stop_loss = new_sl
                return new_sl
            return None

        best = max(position.best_price or position.entry_price, price)
        position.best_price = best
        if not position.trailing_active:
            if best - position.entry_price < self.activation * atr:
                return None
            position.trailing_active = True
        new_sl = round(best - self.trail * atr, 2)
        if new_sl > position.stop_loss:
            position.stop_loss = new_sl
            return new_sl
        return None
