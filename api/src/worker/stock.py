import asyncio
import logging
from datetime import datetime, timedelta
from sqlalchemy import select, update, nulls_first, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from services.stock import decrement_stock
from settings import settings


logger = logging.getLogger('orders-worker-stock-loop')


async def stock_loop(session_maker: async_sessionmaker[AsyncSession]):
    while True:
        if not await process_stock_decrement(session_maker):
            await asyncio.sleep(settings.stock_loop_sleep_duration)


async def process_stock_decrement(session_maker: async_sessionmaker[AsyncSession]) -> bool:
    """
    Applies one stock decrement the webhook handler couldn't apply itself.
    Returns False when there was nothing to do
    """
    async with session_maker() as session:
        request = await session.scalar(
            select(tables.StockDecrement)
            .where(
                tables.StockDecrement.applied_at.is_(None),
                or_(
                    tables.StockDecrement.processed_at.is_(None),
                    tables.StockDecrement.processed_at < (datetime.now() - timedelta(seconds=settings.stock_loop_sleep_duration))
                )
            )
            .order_by(nulls_first(tables.StockDecrement.processed_at.asc()))
            .with_for_update(skip_locked=True)
            .limit(1)
        )

        if request is None:
            return False

        request_id, order_id = request.id, request.order_id

        try:
            await decrement_stock(session, order_id)
            await session.commit()
            return True
        except SQLAlchemyError:
            logger.exception(f'stock decrement for order {order_id} failed, will retry')
            await session.rollback()

    async with session_maker() as session, session.begin():
        await session.execute(
            update(tables.StockDecrement)
            .where(tables.StockDecrement.id == request_id)
            .values({tables.StockDecrement.processed_at: datetime.now()})
        )

    return True
