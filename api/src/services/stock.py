import logging
from uuid import UUID
from datetime import datetime
from sqlalchemy import select, update, case, func
from sqlalchemy.ext.asyncio import AsyncSession

import tables


logger = logging.getLogger('orders-service-stock')


async def decrement_stock(session: AsyncSession, order_id: UUID) -> bool:
    """Applies the pending stock decrement recorded for `order_id`.

    Must run inside the caller's transaction. The ledger row is claimed with a
    conditional update before anything else, so however many callers race here
    only one of them decrements. Returns False when there was nothing to apply.
    """
    now = datetime.now()

    claimed = await session.execute(
        update(tables.StockDecrement)
        .where(
            tables.StockDecrement.order_id == order_id,
            tables.StockDecrement.applied_at.is_(None)
        )
        .values({
            tables.StockDecrement.applied_at: now,
            tables.StockDecrement.processed_at: now
        })
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        return False

    items = (await session.execute(
        select(tables.OrderItem.product_id, tables.OrderItem.size, tables.OrderItem.quantity)
        .where(tables.OrderItem.order_id == order_id)
    )).all()

    if not items:
        logger.warning(f'order {order_id} has no items, nothing to decrement')
        return True

    for product_id, size, quantity in items:
        await session.execute(
            update(tables.ProductSize)
            .where(
                tables.ProductSize.product_id == product_id,
                tables.ProductSize.size == size
            )
            .values({
                # Never below zero
                tables.ProductSize.stock: case(
                    (tables.ProductSize.stock > quantity, tables.ProductSize.stock - quantity),
                    else_=0
                )
            })
            .execution_options(synchronize_session=False)
        )

    await session.execute(
        update(tables.Product)
        .where(tables.Product.id.in_({product_id for product_id, _, _ in items}))
        .values({
            tables.Product.stock_quantity: (
                select(func.coalesce(func.sum(tables.ProductSize.stock), 0))
                .where(tables.ProductSize.product_id == tables.Product.id)
                .scalar_subquery()
            )
        })
        .execution_options(synchronize_session=False)
    )

    logger.info(f'decremented stock for {len(items)} items of order {order_id}')
    return True
