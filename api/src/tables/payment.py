from .base import Base
from typing import Literal, Any
from datetime import datetime
from uuid import UUID
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column
from .order import Order


# 'challenged' is a capture held for fraud review, it is never treated as paid
PaymentStatus = Literal['pending', 'paid', 'cancelled', 'expired', 'failed', 'challenged']


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    order_id: Mapped[UUID] = mapped_column(ForeignKey(Order.id, ondelete='RESTRICT'), index=True)
    # Order id as Midtrans knows it, the order number itself or an attempt id
    gateway_order_id: Mapped[str] = mapped_column(String(50), unique=True)
    transaction_id: Mapped[str | None] = mapped_column(nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column()
    payment_proof: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column()
    updated_at: Mapped[datetime] = mapped_column()
