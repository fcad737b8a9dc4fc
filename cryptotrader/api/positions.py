"""Positions API."""

import asyncio
import logging

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from cryptotrader.api.deps import get_controller, require_token
from cryptotrader.database import get_session
from cryptotrader.domain import PositionSide
from cryptotrader.models.position import PairPosition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(require_token)])


@router.get("")
def list_positions(
    open_only: bool = False,
    session: Session = Depends(get_session),
):
    stmt = select(PairPosition).order_by(PairPosition.pair)
    if open_only:
        stmt = stmt.where(PairPosition.side != "none")
    return session.exec(stmt).all()


@router.get("/enriched")
async def enriched_positions(controller=Depends(get_controller)):
    """Open positions with the current price and unrealized P&L."""
    snapshot = controller.store.snapshot()
    positions = [p for p in snapshot.positions.values() if p.is_open]
    if not positions:
        return []

    prices = await asyncio.gather(
        *(controller.exchange.get_last_price(p.pair) for p in positions),
        return_exceptions=True,
    )

    result = []
    for pos, price in zip(positions, prices):
        entry = {
            "pair": pos.pair,
            "side": pos.side.value,
            "quantity": float(pos.quantity),
            "entry_price": float(pos.entry_price),
            "stop_price": float(pos.stop_price) if pos.stop_price is not None else None,
            "leverage": pos.leverage,
            "phase": pos.phase.value,
            "opened_at": pos.opened_at,
            "current_price": None,
            "unrealized_pnl": None,
            "unrealized_pct": None,
        }
        if isinstance(price, Exception):
            logger.warning(f"[{pos.pair}] price lookup failed: {price}")
        else:
            direction = 1 if pos.side is PositionSide.LONG else -1
            pnl = direction * (price - pos.entry_price) * pos.quantity
            cost = pos.entry_price * pos.quantity
            entry["current_price"] = float(price)
            entry["unrealized_pnl"] = round(float(pnl), 8)
            entry["unrealized_pct"] = round(float(pnl / cost * 100), 4) if cost > 0 else 0.0
        result.append(entry)
    return result
