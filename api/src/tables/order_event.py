from uuid import UUID
from datetime import datetime
from typing import Any
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OrderEvent(Base):
    __tablename__ = 'order_events'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    order_id: Mapped[UUID] = mapped_column(index=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    processed_at: Mapped[datetime | None] = mapped_column(index=True, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column()
