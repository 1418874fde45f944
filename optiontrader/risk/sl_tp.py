"""Stop-loss and take-profit calculation — pure math, no I/O.

ATR approach:
    CE: SL = entry − sl_mult × ATR,  TP = entry + tp_mult × ATR
    PE: mirrored (SL above entry, TP below).

Structural override:
    When a level exists beyond the entry in the favourable direction
    (resistance above for CE, support below for PE), the nearest one
    becomes the TP.

Both prices are floored at the minimum option premium.
"""

from dataclasses import dataclass
from typing import Optional

from optiontrader.strategy.models import CE, OPTION_TYPES, PE, LevelSet

MIN_STOP_LOSS = 0.05
MIN_TAKE_PROFIT = 0.10


@dataclass
class RiskLevels:
    """Computed stop-loss and take-profit for a trade."""
    sl: float
    tp: float
    tp_source: str  # "atr" or "level"


def calculate_risk_levels(
    entry_price: float,
    option_type: str,
    atr: float,
    sl_multiplier: float = 1.5,
    tp_multiplier: float = 2.0,
    levels: Optional[LevelSet] = None,
) -> Optional[RiskLevels]:
    """Calculate SL and TP for a new position.

    Args:
        entry_price: Trade entry price.
        option_type: ``"CE"`` or ``"PE"``.
        atr: Current ATR.
        sl_multiplier: SL distance as a multiple of ATR.
        tp_multiplier: TP distance as a multiple of ATR.
        levels: Current S/R levels for the structural TP override.

    Returns:
        ``RiskLevels``, or ``None`` when ATR is zero (no usable distance).
    """
    if option_type not in OPTION_TYPES:
        raise ValueError(f"option_type must be 'CE' or 'PE', got '{option_type}'")
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    if atr < 0:
        raise ValueError(f"atr must be >= 0, got {atr}")
    if atr == 0:
        return None

    tp_source = "atr"
    if option_type == CE:
        sl = entry_price - atr * sl_multiplier
        tp = entry_price + atr * tp_multiplier
        if levels is not None:
            above = [lv.price for lv in levels.resistances if lv.price > entry_price]
            if above:
                tp = min(above)
                tp_source = "level"
    else:
        sl = entry_price + atr * sl_multiplier
        tp = entry_price - atr * tp_multiplier
        if levels is not None:
            below = [lv.price for lv in levels.supports if lv.price < entry_price]
            if below:
                tp = max(below)
                tp_source = "level"

    return RiskLevels(
        sl=round(max(sl, MIN_STOP_LOSS), 2),
        tp=round(max(tp, MIN_TAKE_PROFIT), 2),
        tp_source=tp_source,
    )


def exit_reason(option_type: str, price: float, stop_loss: float, take_profit: float,
                trailing: bool = False) -> Optional[str]:
    """Return the exit reason if *price* crosses the SL or TP, else ``None``.

    CE exits at ``price ≤ SL`` or ``price ≥ TP``; PE is mirrored.  The
    stop is checked first.
    """
    if option_type == PE:
        sl_hit = price >= stop_loss
        tp_hit = price <= take_profit
    else:
        sl_hit = price <= stop_loss
        tp_hit = price >= take_profit

    if sl_hit:
        label = "Trailing SL Hit" if trailing else "StopLoss Hit"
        return f"{label} ({option_type})"
    if tp_hit:
        return f"TakeProfit Hit ({option_type})"
    return None
