from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Iterable

from chainsignals.performance.assets import USD, is_supported_asset, normalize_symbol
from chainsignals.performance.prices import PriceBook

LONG = 1
SHORT = -1
CASH = 0

MIN_LEVERAGE = 1
MAX_LEVERAGE = 5

# Stored direction codes, as written by ingestion.
STORED_LONG = 0
STORED_SHORT = 1


def _finite(value: Any) -> float | None:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return num


def clamp_percent(value: Any) -> int:
    num = _finite(value)
    if num is None:
        return 0
    return max(0, min(100, math.floor(num)))


def clamp_leverage(value: Any) -> int:
    num = _finite(value)
    if num is None:
        return MIN_LEVERAGE
    return max(MIN_LEVERAGE, min(MAX_LEVERAGE, math.floor(num)))


def contract_direction(target_raw: Any) -> int:
    """Map the contract's target enum to the stored direction code.

    Only ``0`` is Long. Every other value, including ones the contract does not
    define today, is stored as Short.
    """
    num = _finite(target_raw)
    if num is not None and int(num) == 0:
        return STORED_LONG
    return STORED_SHORT


def direction_label(direction: int) -> str:
    if direction == CASH:
        return "CASH"
    return "SHORT" if direction < 0 else "LONG"


def direction_from_label(label: Any) -> int:
    text = str(label or "").strip().upper()
    if text == "CASH":
        return CASH
    if text == "SHORT":
        return SHORT
    return LONG


@dataclass(frozen=True)
class SignalInput:
    """A signal after validation; every rebalance path consumes this type."""

    asset: str
    direction: int
    leverage: int
    percent: int

    @property
    def is_usd(self) -> bool:
        return self.asset == USD

    @property
    def supported(self) -> bool:
        return is_supported_asset(self.asset)

    @classmethod
    def from_raw(cls, asset: Any, direction: Any, leverage: Any, weight_raw: Any) -> "SignalInput":
        symbol = normalize_symbol(asset)
        percent = clamp_percent(weight_raw)
        if symbol == USD:
            return cls(asset=USD, direction=CASH, leverage=1, percent=percent)
        stored = _finite(direction)
        signed = SHORT if stored is not None and int(stored) == STORED_SHORT else LONG
        return cls(asset=symbol, direction=signed, leverage=clamp_leverage(leverage), percent=percent)


@dataclass(frozen=True)
class Position:
    value: float
    direction: int = CASH
    leverage: int = 1
    is_usd: bool = False


Holdings = dict[str, Position]


@dataclass(frozen=True)
class SnapshotPosition:
    asset: str
    percent: float
    direction: str
    leverage: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "percent": self.percent,
            "direction": self.direction,
            "leverage": self.leverage,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SnapshotPosition":
        asset = normalize_symbol(payload.get("asset"))
        return cls(
            asset=asset,
            percent=_finite(payload.get("percent")) or 0.0,
            direction=direction_label(direction_from_label(payload.get("direction"))) if asset != USD else "CASH",
            leverage=clamp_leverage(payload.get("leverage", 1)),
        )


def cash_position(value: float) -> Position:
    return Position(value=value, direction=CASH, leverage=1, is_usd=True)


def seed_holdings() -> Holdings:
    return {USD: cash_position(1.0)}


def total_value(holdings: Holdings) -> float:
    return float(sum(p.value for p in holdings.values()))


def is_seed_state(holdings: Holdings) -> bool:
    """True while the strategy still sits on its untouched unit of cash."""
    usd = holdings.get(USD)
    if usd is None or abs(usd.value - 1.0) > 1e-12:
        return False
    return all(p.value <= 0 for asset, p in holdings.items() if asset != USD)


def _position_for(signal: SignalInput, value: float) -> Position:
    if signal.is_usd:
        return cash_position(value)
    return Position(value=value, direction=signal.direction, leverage=signal.leverage, is_usd=False)


def apply_target_allocation(
    holdings: Holdings,
    signal: SignalInput,
    first_position: bool | None = None,
) -> Holdings:
    """Rebalance ``holdings`` so ``signal.asset`` holds ``signal.percent`` of equity.

    Total equity is preserved. When ``first_position`` is true (by default:
    the holdings are still the seeded cash unit) the whole equity moves into
    the signalled asset and the percentage is ignored. Unsupported assets leave
    the holdings untouched. The input mapping is never mutated.
    """
    if not signal.supported:
        return dict(holdings)

    if first_position is None:
        first_position = is_seed_state(holdings)
    total = total_value(holdings)
    if first_position:
        return {signal.asset: _position_for(signal, total if total > 0 else 1.0)}

    current = holdings[signal.asset].value if signal.asset in holdings else 0.0
    other = total - current
    desired = signal.percent / 100.0 * total
    desired_other = total - desired

    out: Holdings = {}
    for asset, pos in holdings.items():
        if asset == signal.asset:
            continue
        if other > 0:
            out[asset] = replace(pos, value=pos.value * (desired_other / other))
        else:
            out[asset] = pos

    if other <= 0 and desired_other > 0:
        if signal.is_usd:
            # Cash is the only bucket; there is nowhere else to put the remainder.
            desired = total
        else:
            prior = out[USD].value if USD in out else 0.0
            out[USD] = cash_position(prior + desired_other)

    if desired > 0:
        out[signal.asset] = _position_for(signal, desired)
    return out


def drift_holdings(holdings: Holdings, price_book: PriceBook, t0: int, t1: int) -> Holdings:
    """Mark non-cash buckets from ``t0`` to ``t1``; a missing price means no drift."""
    out: Holdings = {}
    for asset, pos in holdings.items():
        if pos.is_usd or pos.value <= 0 or t1 <= t0:
            out[asset] = pos
            continue
        p0 = price_book.price_at_or_before(asset, t0)
        p1 = price_book.price_at_or_before(asset, t1)
        if p0 is None or p1 is None:
            out[asset] = pos
            continue
        raw = (p1 - p0) / p0
        multiplier = 1.0 + pos.direction * pos.leverage * raw
        out[asset] = replace(pos, value=pos.value * max(0.0, multiplier))
    return out


def _sorted_positions(positions: Iterable[SnapshotPosition]) -> list[SnapshotPosition]:
    return sorted(positions, key=lambda p: (-p.percent, p.asset))


def positions_from_holdings(holdings: Holdings) -> list[SnapshotPosition]:
    live = {asset: pos for asset, pos in holdings.items() if pos.value > 0}
    total = total_value(live)
    if total <= 0:
        return []
    return _sorted_positions(
        SnapshotPosition(
            asset=asset,
            percent=pos.value / total * 100.0,
            direction=direction_label(CASH if pos.is_usd else pos.direction),
            leverage=1 if pos.is_usd else pos.leverage,
        )
        for asset, pos in live.items()
    )


def approximate_positions(
    base_positions: Iterable[SnapshotPosition],
    signal: SignalInput,
    first_position: bool,
) -> list[SnapshotPosition]:
    """Price-unaware snapshot: the same rebalance applied in percent space."""
    base: Holdings = {}
    for item in base_positions:
        if item.percent <= 0:
            continue
        is_usd = item.asset == USD
        base[item.asset] = Position(
            value=float(item.percent),
            direction=CASH if is_usd else direction_from_label(item.direction),
            leverage=1 if is_usd else clamp_leverage(item.leverage),
            is_usd=is_usd,
        )
    if not base:
        base = {USD: cash_position(100.0)}

    after = apply_target_allocation(base, signal, first_position=first_position)
    positions = positions_from_holdings(after)
    return _sorted_positions(replace(p, percent=round(p.percent, 6)) for p in positions)
