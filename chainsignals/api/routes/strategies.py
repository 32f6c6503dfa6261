from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from chainsignals.api.deps import get_db
from chainsignals.config.settings import get_settings
from chainsignals.services import strategy_queries

router = APIRouter()


def _strategy_id(raw: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid strategy id") from None
    if value <= 0:
        raise HTTPException(status_code=400, detail="Invalid strategy id")
    return value


@router.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@router.get("/leaderboard")
def get_leaderboard(
    window: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return strategy_queries.leaderboard(db, window)


@router.get("/strategy/{strategy_id}")
def get_strategy(strategy_id: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    payload = strategy_queries.strategy_detail(db, _strategy_id(strategy_id))
    if payload is None:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return payload


@router.get("/strategy/{strategy_id}/equity")
def get_strategy_equity(
    strategy_id: str,
    window: str | None = Query(default="ALL"),
    benchmark: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    payload = strategy_queries.strategy_equity(
        db,
        _strategy_id(strategy_id),
        window=window,
        benchmark=benchmark,
        max_points=get_settings().max_equity_points,
    )
    if payload is None:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return payload


@router.get("/trader/{address}")
def get_trader(address: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    if not address.strip():
        raise HTTPException(status_code=400, detail="Missing trader address")
    return strategy_queries.trader_strategies(db, address)
