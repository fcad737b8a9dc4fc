"""Trade and order history API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from cryptotrader.api.deps import require_token
from cryptotrader.database import get_session
from cryptotrader.models.order import OrderRecord
from cryptotrader.models.trade import Trade

router = APIRouter(prefix="/api", tags=["trades"], dependencies=[Depends(require_token)])


@router.get("/trades")
def list_trades(
    pair: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Trade).order_by(Trade.exit_time.desc())
    if pair is not None:
        stmt = stmt.where(Trade.pair == pair)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/trades/{trade_id}")
def get_trade(trade_id: int, session: Session = Depends(get_session)):
    trade = session.get(Trade, trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade


@router.get("/orders")
def list_orders(
    pair: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(OrderRecord).order_by(OrderRecord.created_at.desc())
    if pair is not None:
        stmt = stmt.where(OrderRecord.pair == pair)
    if status is not None:
        stmt = stmt.where(OrderRecord.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
