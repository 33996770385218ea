from uuid import UUID
from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Product(Base):
    __tablename__ = 'products'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column()
    price: Mapped[int] = mapped_column()
    # Sum of the per size stock, recomputed whenever sizes change
    stock_quantity: Mapped[int] = mapped_column(default=0)


class ProductSize(Base):
    __tablename__ = 'product_sizes'
    __table_args__ = (UniqueConstraint('product_id', 'size'),)

    id: Mapped[UUID] = mapped_column(primary_key=True)
    product_id: Mapped[UUID] = mapped_column(ForeignKey(Product.id, ondelete='CASCADE'), index=True)
    size: Mapped[str] = mapped_column()
    stock: Mapped[int] = mapped_column(default=0)
