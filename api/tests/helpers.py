import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import select, insert, func
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from services.midtrans import compute_signature
from settings import midtrans_settings


async def create_product(
    session_maker: async_sessionmaker[AsyncSession],
    price: int = 150000,
    sizes: dict[str, int] | None = None
) -> uuid.UUID:
    sizes = sizes if sizes is not None else {'M': 5, 'L': 2}
    product_id = uuid.uuid4()

    async with session_maker() as session, session.begin():
        await session.execute(insert(tables.Product).values({
            tables.Product.id: product_id,
            tables.Product.name: 'Kaos Polos',
            tables.Product.price: price,
            tables.Product.stock_quantity: sum(sizes.values())
        }))
        for size, stock in sizes.items():
            await session.execute(insert(tables.ProductSize).values({
                tables.ProductSize.id: uuid.uuid4(),
                tables.ProductSize.product_id: product_id,
                tables.ProductSize.size: size,
                tables.ProductSize.stock: stock
            }))

    return product_id


async def create_order(
    session_maker: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID,
    items: list[tuple[uuid.UUID, str, int, int]],
    order_number: str = 'ORD-100',
    status: str = 'pending',
    gateway_order_ids: list[str] | None = None,
    created_at: datetime | None = None,
    payment_url: str | None = 'https://app.sandbox.midtrans.com/snap/v4/redirection/token'
) -> uuid.UUID:
    """
    Inserts an order with its items and one pending payment per gateway order id,
    the last id being the live attempt
    """
    order_id = uuid.uuid4()
    now = created_at or datetime.now()
    gateway_order_ids = gateway_order_ids or [order_number]

    async with session_maker() as session, session.begin():
        await session.execute(insert(tables.Order).values({
            tables.Order.id: order_id,
            tables.Order.order_number: order_number,
            tables.Order.user_id: user_id,
            tables.Order.status: status,
            tables.Order.total: sum(quantity * price for _, _, quantity, price in items),
            tables.Order.payment_url: payment_url,
            tables.Order.payment_method: 'Midtrans',
            tables.Order.shipping_method: 'regular',
            tables.Order.shipping_address: 'Jl. Merdeka 1, Bandung',
            tables.Order.customer_name: 'Budi',
            tables.Order.customer_email: 'budi@example.com',
            tables.Order.customer_phone: '08123456789',
            tables.Order.created_at: now,
            tables.Order.updated_at: now
        }))
        for product_id, size, quantity, price in items:
            await session.execute(insert(tables.OrderItem).values({
                tables.OrderItem.id: uuid.uuid4(),
                tables.OrderItem.order_id: order_id,
                tables.OrderItem.product_id: product_id,
                tables.OrderItem.size: size,
                tables.OrderItem.quantity: quantity,
                tables.OrderItem.price: price
            }))
        for i, gateway_order_id in enumerate(gateway_order_ids):
            live = i == len(gateway_order_ids) - 1
            await session.execute(insert(tables.Payment).values({
                tables.Payment.id: uuid.uuid4(),
                tables.Payment.order_id: order_id,
                tables.Payment.gateway_order_id: gateway_order_id,
                tables.Payment.status: 'pending' if live else 'cancelled',
                tables.Payment.amount: sum(quantity * price for _, _, quantity, price in items),
                tables.Payment.created_at: now,
                tables.Payment.updated_at: now
            }))

    return order_id


async def get_order(session_maker: async_sessionmaker[AsyncSession], order_number: str) -> tables.Order:
    async with session_maker() as session:
        order = await session.scalar(select(tables.Order).where(tables.Order.order_number == order_number))
        assert order is not None
        return order


async def get_payments(session_maker: async_sessionmaker[AsyncSession], order_id: uuid.UUID) -> dict[str, tables.Payment]:
    async with session_maker() as session:
        return {
            payment.gateway_order_id: payment
            for payment in (await session.scalars(
                select(tables.Payment).where(tables.Payment.order_id == order_id)
            )).all()
        }


async def get_size_stock(session_maker: async_sessionmaker[AsyncSession], product_id: uuid.UUID, size: str) -> int:
    async with session_maker() as session:
        stock = await session.scalar(
            select(tables.ProductSize.stock)
            .where(tables.ProductSize.product_id == product_id, tables.ProductSize.size == size)
        )
        assert stock is not None
        return stock


async def get_product_stock(session_maker: async_sessionmaker[AsyncSession], product_id: uuid.UUID) -> int:
    async with session_maker() as session:
        stock = await session.scalar(select(tables.Product.stock_quantity).where(tables.Product.id == product_id))
        assert stock is not None
        return stock


async def count_rows(session_maker: async_sessionmaker[AsyncSession], table: Any, order_id: uuid.UUID) -> int:
    async with session_maker() as session:
        return await session.scalar(
            select(func.count()).select_from(table).where(table.order_id == order_id)
        ) or 0


def signed_notification(
    order_id: str,
    transaction_status: str,
    gross_amount: str,
    status_code: str = '200',
    fraud_status: str | None = None,
    server_key: str | None = None
) -> dict[str, Any]:
    notification = {
        'transaction_time': '2026-10-18 12:00:00',
        'transaction_status': transaction_status,
        'transaction_id': str(uuid.uuid4()),
        'status_message': 'midtrans payment notification',
        'status_code': status_code,
        'signature_key': compute_signature(order_id, status_code, gross_amount, server_key or midtrans_settings.server_key),
        'payment_type': 'bank_transfer',
        'order_id': order_id,
        'merchant_id': 'G000000000',
        'gross_amount': gross_amount,
        'currency': 'IDR'
    }
    if fraud_status is not None:
        notification['fraud_status'] = fraud_status

    return notification
