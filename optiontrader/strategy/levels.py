"""Support/Resistance level detection from candle history — pure functions.

Levels are typed by pivot shape only (pivot lows are supports, pivot highs
are resistances).  Whether a level sits above or below the current price
is decided later by the signal rules.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from optiontrader.config import LevelDetectionConfig
from optiontrader.strategy.models import (
    RESISTANCE,
    SUPPORT,
    Candle,
    Level,
    LevelSet,
)


@dataclass(frozen=True)
class Pivot:
    """A raw local extremum before grouping."""

    price: float
    kind: str  # "support" or "resistance"
    time: datetime


def find_pivots(candles: Sequence[Candle], window: int = 2) -> list[Pivot]:
    """Identify pivot highs and lows.

    A pivot low is a candle whose low is strictly lower than the lows of
    the *window* candles on each side; a pivot high is the mirror image.
    Windows containing a candle without prices are skipped.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")

    pivots: list[Pivot] = []
    for i in range(window, len(candles) - window):
        candle = candles[i]
        if not candle.has_price:
            continue
        neighbours = [
            candles[i + j]
            for j in range(-window, window + 1)
            if j != 0 and candles[i + j].has_price
        ]
        if len(neighbours) < 2 * window:
            continue
        if all(candle.low < n.low for n in neighbours):
            pivots.append(Pivot(candle.low, SUPPORT, candle.start_time))
        if all(candle.high > n.high for n in neighbours):
            pivots.append(Pivot(candle.high, RESISTANCE, candle.start_time))
    return pivots


def _tolerance(reference: float, sensitivity: float, mode: str) -> float:
    if mode == "absolute":
        return sensitivity
    return abs(reference) * sensitivity


def group_pivots(
    pivots: Iterable[Pivot],
    sensitivity: float,
    sensitivity_mode: str = "percent",
    strength_threshold: int = 1,
) -> list[Level]:
    """Merge nearby same-kind pivots into levels.

    Pivots of each kind are sorted by price and merged sequentially while
    ``|price − reference| ≤ tolerance``, where the reference is the first
    (lowest) member of the current group.  The tolerance is *sensitivity*
    itself in ``"absolute"`` mode, or ``reference × sensitivity`` (a fraction) in
    ``"percent"`` mode.

    Returns:
        Levels with ``strength ≥ strength_threshold``, supports first, each
        kind in ascending price order.  The result does not depend on the
        order of *pivots*.
    """
    by_kind: dict[str, list[Pivot]] = {SUPPORT: [], RESISTANCE: []}
    for pivot in pivots:
        by_kind[pivot.kind].append(pivot)

    levels: list[Level] = []
    for kind in (SUPPORT, RESISTANCE):
        ordered = sorted(by_kind[kind], key=lambda p: (p.price, p.time))
        groups: list[list[Pivot]] = []
        for pivot in ordered:
            if groups:
                reference = groups[-1][0].price
                tolerance = _tolerance(reference, sensitivity, sensitivity_mode)
                if abs(pivot.price - reference) <= tolerance:
                    groups[-1].append(pivot)
                    continue
            groups.append([pivot])

        for group in groups:
            if len(group) < strength_threshold:
                continue
            levels.append(
                Level(
                    price=sum(p.price for p in group) / len(group),
                    kind=kind,
                    strength=len(group),
                    last_touch=max(p.time for p in group),
                )
            )
    return levels


def detect_levels(
    candles: Sequence[Candle], config: LevelDetectionConfig,
) -> LevelSet:
    """Recompute the full level set for one instrument.

    Fewer than ``2 × pivot_window + 1`` candles, or detection disabled,
    yields an empty set.
    """
    if not config.enabled:
        return LevelSet()

    recent = candles[-config.lookback:] if len(candles) > config.lookback else candles
    if len(recent) < 2 * config.pivot_window + 1:
        return LevelSet()

    levels = group_pivots(
        find_pivots(recent, config.pivot_window),
        sensitivity=config.sensitivity,
        sensitivity_mode=config.sensitivity_mode,
        strength_threshold=config.strength_threshold,
    )
    return LevelSet(
        supports=tuple(lv for lv in levels if lv.kind == SUPPORT),
        resistances=tuple(lv for lv in levels if lv.kind == RESISTANCE),
    )
