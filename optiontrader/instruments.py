"""Static instrument catalog — lookup of scrip-master records by token.

The catalog is the SmartAPI scrip-master JSON: a list of objects with
``token``, ``symbol``, ``name``, ``expiry``, ``strike``, ``lotsize``,
``instrumenttype`` and ``exch_seg`` (all strings).
"""

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from optiontrader.strategy.models import InstrumentSeries, option_type_from_symbol

logger = logging.getLogger("optiontrader")


@dataclass(frozen=True)
class Instrument:
    """One tradable contract."""

    token: str
    symbol: str
    name: str = ""
    exchange_segment: str = "NFO"
    option_type: Optional[str] = None
    expiry: Optional[str] = None
    strike: Optional[float] = None
    lot_size: Optional[int] = None

    def to_series(self) -> InstrumentSeries:
        """Fresh live series for this instrument."""
        return InstrumentSeries(
            token=self.token,
            symbol=self.symbol,
            option_type=self.option_type,
            exchange_segment=self.exchange_segment,
            lot_size=self.lot_size,
            expiry=self.expiry,
        )


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def parse_instrument(record: dict) -> Instrument:
    """Build an ``Instrument`` from one scrip-master record."""
    symbol = str(record.get("symbol", ""))
    strike = _to_float(record.get("strike"))
    return Instrument(
        token=str(record["token"]),
        symbol=symbol,
        name=str(record.get("name", "")),
        exchange_segment=str(record.get("exch_seg") or "NFO"),
        option_type=option_type_from_symbol(symbol),
        expiry=record.get("expiry") or None,
        # Scrip master quotes strikes in paise
        strike=strike / 100.0 if strike and strike > 0 else None,
        lot_size=_to_int(record.get("lotsize")),
    )


class InstrumentCatalog:
    """Token-indexed instrument lookup."""

    def __init__(self, instruments: Iterable[Instrument] = ()) -> None:
        self._by_token: dict[str, Instrument] = {i.token: i for i in instruments}

    @classmethod
    def from_json(cls, path: str) -> "InstrumentCatalog":
        """Load a scrip-master JSON file; malformed records are skipped."""
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)

        instruments: list[Instrument] = []
        skipped = 0
        for record in records:
            try:
                instruments.append(parse_instrument(record))
            except (KeyError, TypeError):
                skipped += 1
        if skipped:
            logger.warning("Skipped %d malformed catalog record(s)", skipped)
        logger.info("Loaded %d instrument(s) from %s", len(instruments), path)
        return cls(instruments)

    def get(self, token: str) -> Optional[Instrument]:
        return self._by_token.get(str(token))

    def __contains__(self, token: str) -> bool:
        return str(token) in self._by_token

    def __iter__(self) -> Iterator[Instrument]:
        return iter(self._by_token.values())

    def __len__(self) -> int:
        return len(self._by_token)
