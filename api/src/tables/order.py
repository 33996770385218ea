from .base import Base
from typing import Literal
from datetime import datetime
from uuid import UUID
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column


OrderStatus = Literal['pending', 'paid', 'cancelled', 'expired', 'failed']
TERMINAL_ORDER_STATUSES: tuple[OrderStatus, ...] = ('paid', 'cancelled', 'expired', 'failed')


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True)
    user_id: Mapped[UUID] = mapped_column(index=True)
    status: Mapped[OrderStatus] = mapped_column(String(16), index=True)
    total: Mapped[int] = mapped_column()  # rupiah, Midtrans only accepts integer amounts
    payment_url: Mapped[str | None] = mapped_column(nullable=True)
    payment_method: Mapped[str | None] = mapped_column(nullable=True)
    shipping_method: Mapped[str | None] = mapped_column(nullable=True)
    shipping_address: Mapped[str | None] = mapped_column(nullable=True)
    customer_name: Mapped[str | None] = mapped_column(nullable=True)
    customer_email: Mapped[str | None] = mapped_column(nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    updated_at: Mapped[datetime] = mapped_column()
