from __future__ import annotations

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chainsignals.db.database import Base


class MetaEntry(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(128))


class SignalRecord(Base):
    __tablename__ = "signals"

    # On-chain index, assigned by the contract.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    trader: Mapped[str] = mapped_column(String(64), index=True)
    strategy_name: Mapped[str] = mapped_column(String(128), index=True)
    asset_symbol: Mapped[str] = mapped_column(String(32), index=True)
    direction: Mapped[int] = mapped_column(Integer)
    leverage: Mapped[int] = mapped_column(Integer)
    weight_raw: Mapped[int] = mapped_column(Integer)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[int] = mapped_column(Integer, index=True)


class Strategy(Base):
    __tablename__ = "strategies"
    __table_args__ = (
        UniqueConstraint("trader_address", "strategy_name", name="uq_strategy_trader_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    trader_address: Mapped[str] = mapped_column(String(64), index=True)
    strategy_name: Mapped[str] = mapped_column(String(128))
    first_signal_ts: Mapped[int] = mapped_column(Integer)
    last_signal_ts: Mapped[int] = mapped_column(Integer)
    num_signals: Mapped[int] = mapped_column(Integer, default=0)
    last_value_index: Mapped[float] = mapped_column(Float, default=1.0)
    last_segment_end_ts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_liquidated: Mapped[bool] = mapped_column(Boolean, default=False)

    segments: Mapped[list["StrategySegment"]] = relationship(
        back_populates="strategy", cascade="all, delete-orphan", passive_deletes=True
    )
    holdings: Mapped[list["StrategyHolding"]] = relationship(
        back_populates="strategy", cascade="all, delete-orphan", passive_deletes=True
    )
    snapshots: Mapped[list["StrategyPositionSnapshot"]] = relationship(
        back_populates="strategy", cascade="all, delete-orphan", passive_deletes=True
    )
    stats: Mapped[list["StrategyStats"]] = relationship(
        back_populates="strategy", cascade="all, delete-orphan", passive_deletes=True
    )


class Price(Base):
    __tablename__ = "prices"
    __table_args__ = (
        UniqueConstraint("asset_symbol", "timestamp", name="uq_price_asset_ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    asset_symbol: Mapped[str] = mapped_column(String(32), index=True)
    timestamp: Mapped[int] = mapped_column(Integer, index=True)
    price_usd: Mapped[float] = mapped_column(Float)


class StrategySegment(Base):
    __tablename__ = "strategy_segments"
    __table_args__ = (
        UniqueConstraint("strategy_id", "start_ts", "end_ts", name="uq_segment_strategy_span"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    strategy_id: Mapped[int] = mapped_column(ForeignKey("strategies.id", ondelete="CASCADE"), index=True)
    start_ts: Mapped[int] = mapped_column(Integer)
    end_ts: Mapped[int] = mapped_column(Integer, index=True)
    duration_sec: Mapped[int] = mapped_column(Integer)
    raw_return: Mapped[float] = mapped_column(Float)
    hourly_equiv_ret: Mapped[float] = mapped_column(Float)
    value_index_end: Mapped[float] = mapped_column(Float)

    strategy: Mapped[Strategy] = relationship(back_populates="segments")


class StrategyHolding(Base):
    __tablename__ = "strategy_holdings"
    __table_args__ = (
        UniqueConstraint("strategy_id", "asset_symbol", name="uq_holding_strategy_asset"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    strategy_id: Mapped[int] = mapped_column(ForeignKey("strategies.id", ondelete="CASCADE"), index=True)
    asset_symbol: Mapped[str] = mapped_column(String(32))
    value: Mapped[float] = mapped_column(Float)
    direction: Mapped[int] = mapped_column(Integer, default=0)
    leverage: Mapped[int] = mapped_column(Integer, default=1)
    is_usd: Mapped[bool] = mapped_column(Boolean, default=False)

    strategy: Mapped[Strategy] = relationship(back_populates="holdings")


class StrategyPositionSnapshot(Base):
    __tablename__ = "strategy_position_snapshots"
    __table_args__ = (
        UniqueConstraint("strategy_id", "signal_ts", name="uq_snapshot_strategy_ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    strategy_id: Mapped[int] = mapped_column(ForeignKey("strategies.id", ondelete="CASCADE"), index=True)
    signal_ts: Mapped[int] = mapped_column(Integer, index=True)
    positions_json: Mapped[str] = mapped_column(Text, default="[]")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    strategy: Mapped[Strategy] = relationship(back_populates="snapshots")


class StrategyStats(Base):
    __tablename__ = "strategy_stats"
    __table_args__ = (
        UniqueConstraint("strategy_id", "window", name="uq_stats_strategy_window"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    strategy_id: Mapped[int] = mapped_column(ForeignKey("strategies.id", ondelete="CASCADE"), index=True)
    window: Mapped[str] = mapped_column("window", String(8), quote=True)
    last_updated_ts: Mapped[int] = mapped_column(Integer)
    sharpe_annual: Mapped[float | None] = mapped_column(Float, nullable=True)
    vol_annual: Mapped[float | None] = mapped_column(Float, nullable=True)
    vol_hourly: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_return: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_drawdown: Mapped[float | None] = mapped_column(Float, nullable=True)

    strategy: Mapped[Strategy] = relationship(back_populates="stats")
