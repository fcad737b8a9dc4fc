"""Position/order state store.

The only component that mutates position and order records. Every write
runs in a single session/transaction under a lock, and readers get frozen
`Position`/`Order` views (never ORM rows), so an order is never seen in two
statuses at once.
"""

import logging
import math
import threading
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import Session, select

from cryptotrader.domain import (
    IntentReason,
    Order,
    OrderStatus,
    OrderType,
    PairPhase,
    PortfolioSnapshot,
    Position,
    PositionSide,
    Side,
)
from cryptotrader.models.job_log import JobLog
from cryptotrader.models.order import OrderRecord
from cryptotrader.models.position import PairPosition
from cryptotrader.models.trade import Trade
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PARTIALLY_FILLED.value)


def _dec(value: float | None) -> Decimal | None:
    return None if value is None else to_decimal(value)


def _safe_float(v) -> float | None:
    """Return None for inf/nan so they don't end up in the DB."""
    if v is None:
        return None
    v = float(v)
    if math.isinf(v) or math.isnan(v):
        return None
    return v


def _to_position(row: PairPosition) -> Position:
    return Position(
        pair=row.pair,
        side=PositionSide(row.side),
        quantity=to_decimal(row.quantity),
        entry_price=to_decimal(row.entry_price),
        leverage=row.leverage,
        opened_at=row.opened_at,
        stop_price=_dec(row.stop_price),
        phase=PairPhase(row.phase),
    )


def _to_order(row: OrderRecord) -> Order:
    return Order(
        id=row.order_id,
        pair=row.pair,
        side=Side(row.side),
        type=OrderType(row.order_type),
        quantity=to_decimal(row.quantity),
        price=_dec(row.price),
        status=OrderStatus(row.status),
        reason=IntentReason(row.reason),
        filled_quantity=to_decimal(row.filled_quantity),
        avg_fill_price=_dec(row.avg_fill_price),
        isolated_margin=row.isolated_margin,
        created_at=row.created_at,
    )


class StateStore:
    def __init__(self, engine, pairs: list[str] | None = None):
        self.engine = engine
        self._lock = threading.RLock()
        if pairs:
            self.ensure_pairs(pairs)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> PortfolioSnapshot:
        """Consistent view of every position and in-flight order."""
        with self._lock, Session(self.engine) as session:
            positions = session.exec(select(PairPosition)).all()
            orders = session.exec(
                select(OrderRecord).where(OrderRecord.status.in_(_OPEN_STATUSES))  # type: ignore[attr-defined]
            ).all()
            return PortfolioSnapshot(
                positions={p.pair: _to_position(p) for p in positions},
                open_orders=tuple(_to_order(o) for o in orders),
            )

    def position(self, pair: str) -> Position:
        with self._lock, Session(self.engine) as session:
            row = self._get_row(session, pair)
            return _to_position(row) if row else Position(pair=pair)

    def order(self, order_id: str) -> Order | None:
        with self._lock, Session(self.engine) as session:
            row = self._get_order_row(session, order_id)
            return _to_order(row) if row else None

    def open_orders(self, pair: str | None = None) -> list[Order]:
        with self._lock, Session(self.engine) as session:
            stmt = select(OrderRecord).where(OrderRecord.status.in_(_OPEN_STATUSES))  # type: ignore[attr-defined]
            if pair is not None:
                stmt = stmt.where(OrderRecord.pair == pair)
            return [_to_order(o) for o in session.exec(stmt).all()]

    # ------------------------------------------------------------------
    # Position writes
    # ------------------------------------------------------------------

    def ensure_pairs(self, pairs: list[str]):
        """Create a flat row for every pair that does not have one yet."""
        with self._lock, Session(self.engine) as session:
            existing = {row.pair for row in session.exec(select(PairPosition)).all()}
            for pair in pairs:
                if pair not in existing:
                    session.add(PairPosition(pair=pair))
            session.commit()

    def set_phase(self, pair: str, phase: PairPhase):
        with self._lock, Session(self.engine) as session:
            row = self._require_row(session, pair)
            if row.phase != phase.value:
                logger.debug(f"[{pair}] phase {row.phase} --> {phase.value}")
            row.phase = phase.value
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    def open_position(
        self,
        pair: str,
        side: PositionSide,
        quantity: Decimal,
        entry_price: Decimal,
        leverage: int | None = None,
        stop_price: Decimal | None = None,
    ) -> Position:
        """Record a confirmed opening fill. Adds to an existing position on the same side."""
        if side is PositionSide.NONE:
            raise ValueError("cannot open a position with side NONE")
        with self._lock, Session(self.engine) as session:
            row = self._require_row(session, pair)
            if row.side not in (PositionSide.NONE.value, side.value):
                raise ValueError(f"{pair} already holds a {row.side} position")

            held = to_decimal(row.quantity) if row.side == side.value else Decimal("0")
            total = held + quantity
            if held > 0:
                entry_price = (to_decimal(row.entry_price) * held + entry_price * quantity) / total
            else:
                row.opened_at = datetime.now(timezone.utc)

            row.side = side.value
            row.quantity = float(total)
            row.entry_price = float(entry_price)
            row.leverage = leverage
            row.stop_price = _safe_float(stop_price)
            row.phase = PairPhase.OPEN.value
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(f"[{pair}] position {side.value} {total} @ {entry_price}")
            return _to_position(row)

    def reduce_position(
        self,
        pair: str,
        quantity: Decimal,
        exit_price: Decimal,
        reason: IntentReason | str,
    ) -> Trade | None:
        """Record a confirmed closing fill. Returns the Trade once the position is flat."""
        reason = reason.value if isinstance(reason, IntentReason) else reason
        with self._lock, Session(self.engine) as session:
            row = self._require_row(session, pair)
            if row.side == PositionSide.NONE.value:
                logger.warning(f"[{pair}] closing fill with no open position")
                return None

            held = to_decimal(row.quantity)
            remaining = held - quantity
            if remaining > 0:
                row.quantity = float(remaining)
                row.updated_at = datetime.now(timezone.utc)
                session.add(row)
                session.commit()
                logger.info(f"[{pair}] position reduced to {remaining}")
                return None

            entry = to_decimal(row.entry_price)
            direction = Decimal(1) if row.side == PositionSide.LONG.value else Decimal(-1)
            pnl = direction * (exit_price - entry) * held
            cost = entry * held
            pnl_pct = pnl / cost * 100 if cost > 0 else Decimal("0")

            trade = Trade(
                pair=pair,
                side=row.side,
                entry_time=row.opened_at,
                entry_price=float(entry),
                exit_price=float(exit_price),
                quantity=float(held),
                leverage=row.leverage,
                pnl=round(float(pnl), 8),
                pnl_pct=round(float(pnl_pct), 4),
                exit_reason=reason,
            )
            session.add(trade)

            row.side = PositionSide.NONE.value
            row.quantity = 0.0
            row.entry_price = 0.0
            row.leverage = None
            row.opened_at = None
            row.stop_price = None
            row.phase = PairPhase.FLAT.value
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()
            session.refresh(trade)
            logger.info(f"[{pair}] position closed ({reason}): PnL={float(pnl):.4f} ({float(pnl_pct):.2f}%)")
            return trade

    def reset_position(self, pair: str):
        """Force a pair flat without recording a trade (reconciliation only)."""
        with self._lock, Session(self.engine) as session:
            row = self._require_row(session, pair)
            row.side = PositionSide.NONE.value
            row.quantity = 0.0
            row.entry_price = 0.0
            row.leverage = None
            row.opened_at = None
            row.stop_price = None
            row.phase = PairPhase.FLAT.value
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    # ------------------------------------------------------------------
    # Order writes
    # ------------------------------------------------------------------

    def record_order(self, order: Order) -> Order:
        with self._lock, Session(self.engine) as session:
            row = OrderRecord(
                order_id=order.id,
                pair=order.pair,
                side=order.side.value,
                order_type=order.type.value,
                price=_safe_float(order.price),
                quantity=float(order.quantity),
                filled_quantity=float(order.filled_quantity),
                avg_fill_price=_safe_float(order.avg_fill_price),
                status=order.status.value,
                reason=order.reason.value,
                isolated_margin=order.isolated_margin,
                created_at=order.created_at,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_order(row)

    def update_order(
        self,
        order_id: str,
        status: OrderStatus,
        filled_quantity: Decimal | None = None,
        avg_fill_price: Decimal | None = None,
        error: str | None = None,
    ) -> Order:
        """Apply one status transition. Terminal orders are never reopened."""
        with self._lock, Session(self.engine) as session:
            row = self._get_order_row(session, order_id)
            if row is None:
                raise KeyError(f"unknown order {order_id}")
            current = OrderStatus(row.status)
            if current.is_terminal and status is not current:
                logger.warning(
                    f"[{row.pair}] ignoring {status.value} for order {order_id} already {current.value}"
                )
                return _to_order(row)

            row.status = status.value
            if filled_quantity is not None:
                row.filled_quantity = float(filled_quantity)
            if avg_fill_price is not None:
                row.avg_fill_price = float(avg_fill_price)
            if error is not None:
                row.error = error
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_order(row)

    # ------------------------------------------------------------------
    # Job log
    # ------------------------------------------------------------------

    def log_cycle(
        self,
        pair: str,
        status: str,
        snapshot=None,
        action: str | None = None,
        bias: str | None = None,
        message: str | None = None,
        details: dict | None = None,
    ):
        """Write a JobLog entry."""
        with self._lock, Session(self.engine) as session:
            log = JobLog(
                pair=pair,
                status=status,
                action=action,
                bias=bias,
                close=_safe_float(snapshot.close) if snapshot else None,
                fast_avg=_safe_float(snapshot.fast_avg) if snapshot else None,
                slow_avg=_safe_float(snapshot.slow_avg) if snapshot else None,
                macd_line=_safe_float(snapshot.macd_line) if snapshot else None,
                macd_signal_line=_safe_float(snapshot.macd_signal_line) if snapshot else None,
                message=message,
                details=details,
            )
            session.add(log)
            session.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_row(session: Session, pair: str) -> PairPosition | None:
        return session.exec(select(PairPosition).where(PairPosition.pair == pair)).first()

    def _require_row(self, session: Session, pair: str) -> PairPosition:
        row = self._get_row(session, pair)
        if row is None:
            row = PairPosition(pair=pair)
            session.add(row)
        return row

    @staticmethod
    def _get_order_row(session: Session, order_id: str) -> OrderRecord | None:
        return session.exec(select(OrderRecord).where(OrderRecord.order_id == order_id)).first()
