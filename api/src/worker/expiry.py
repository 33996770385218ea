import asyncio
import logging
from datetime import datetime, timedelta
from sqlalchemy import select, update, not_
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from services.reconciliation import insert_order_event
from settings import settings


logger = logging.getLogger('orders-worker-expiry-loop')


async def expiry_loop(session_maker: async_sessionmaker[AsyncSession]):
    while True:
        await expire_stale_orders(session_maker)
        await asyncio.sleep(settings.expiry_loop_sleep_duration)


async def expire_stale_orders(session_maker: async_sessionmaker[AsyncSession], now: datetime | None = None) -> int:
    now = now or datetime.now()
    cutoff = now - timedelta(minutes=settings.order_expiry_minutes)

    async with session_maker() as session, session.begin():
        # Still conditioned on 'pending', a notification may have finished the order meanwhile
        expired = (await session.execute(
            update(tables.Order)
            .where(
                tables.Order.status == 'pending',
                tables.Order.created_at < cutoff,
                # Captures under fraud review are left to Midtrans
                not_(
                    select(tables.Payment.id)
                    .where(
                        tables.Payment.order_id == tables.Order.id,
                        tables.Payment.status == 'challenged'
                    )
                    .exists()
                )
            )
            .values({
                tables.Order.status: 'expired',
                tables.Order.payment_url: None,
                tables.Order.updated_at: now
            })
            .returning(tables.Order.id, tables.Order.order_number)
            .execution_options(synchronize_session=False)
        )).all()

        if not expired:
            return 0

        await session.execute(
            update(tables.Payment)
            .where(
                tables.Payment.order_id.in_([order_id for order_id, _ in expired]),
                tables.Payment.status == 'pending'
            )
            .values({tables.Payment.status: 'expired', tables.Payment.updated_at: now})
            .execution_options(synchronize_session=False)
        )

        for order_id, order_number in expired:
            await session.execute(insert_order_event(order_id, order_number, 'expired', 'expired', 'expiry'))

    logger.info(f'expired {len(expired)} orders pending since before {cutoff:%Y-%m-%d %H:%M}')
    return len(expired)
