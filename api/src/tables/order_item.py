from uuid import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import ForeignKey

from .base import Base
from .order import Order
from .product import Product


class OrderItem(Base):
    __tablename__ = 'order_items'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    order_id: Mapped[UUID] = mapped_column(ForeignKey(Order.id, ondelete='CASCADE'), index=True)
    product_id: Mapped[UUID] = mapped_column(ForeignKey(Product.id, ondelete='RESTRICT'))
    size: Mapped[str] = mapped_column()
    quantity: Mapped[int] = mapped_column()
    price: Mapped[int] = mapped_column()
