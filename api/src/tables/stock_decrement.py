from uuid import UUID
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import ForeignKey

from .base import Base
from .order import Order


class StockDecrement(Base):
    __tablename__ = 'stock_decrements'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    # One row per order ever, written by the transition to 'paid'
    order_id: Mapped[UUID] = mapped_column(ForeignKey(Order.id, ondelete='RESTRICT'), unique=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    applied_at: Mapped[datetime | None] = mapped_column(index=True, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(index=True, nullable=True)
