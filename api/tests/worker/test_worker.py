import uuid
import json
import aiokafka.errors
from datetime import datetime, timedelta
from sqlalchemy import select, func, insert
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from services.reconciliation import ReconciliationService, insert_order_event
from services.midtrans import MidtransNotification
from worker.expiry import expire_stale_orders
from worker.order_events import process_order_event
from worker.stock import process_stock_decrement
from helpers import (
    count_rows,
    create_order,
    create_product,
    get_order,
    get_payments,
    get_size_stock,
    signed_notification
)


class RecordingProducer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[tuple[str, bytes, bytes]] = []

    async def send_and_wait(self, topic: str, key: bytes, value: bytes):
        if self.fail:
            raise aiokafka.errors.KafkaConnectionError('broker is down')
        self.messages.append((topic, key, value))


async def test_stock_loop_applies_leftover_decrement(
    session_maker: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID
):
    product_id = await create_product(session_maker, sizes={'M': 4})
    order_id = await create_order(session_maker, user_id, items=[(product_id, 'M', 3, 150000)], status='paid')

    async with session_maker() as session, session.begin():
        await session.execute(insert(tables.StockDecrement).values({
            tables.StockDecrement.id: uuid.uuid4(),
            tables.StockDecrement.order_id: order_id,
            tables.StockDecrement.created_at: datetime.now()
        }))

    assert await process_stock_decrement(session_maker)
    assert await get_size_stock(session_maker, product_id, 'M') == 1

    # Already applied, nothing left to pick
    assert not await process_stock_decrement(session_maker)
    assert await get_size_stock(session_maker, product_id, 'M') == 1


async def test_stock_loop_after_webhook_does_nothing(
    session_maker: async_sessionmaker[AsyncSession],
    reconciliation_service: ReconciliationService,
    user_id: uuid.UUID
):
    product_id = await create_product(session_maker, sizes={'M': 4})
    await create_order(session_maker, user_id, items=[(product_id, 'M', 1, 150000)], order_number='ORD-200')

    await reconciliation_service.reconcile(
        MidtransNotification.model_validate(signed_notification('ORD-200', 'settlement', '150000.00'))
    )

    assert not await process_stock_decrement(session_maker)
    assert await get_size_stock(session_maker, product_id, 'M') == 3


async def test_expire_stale_orders(
    session_maker: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID
):
    product_id = await create_product(session_maker, sizes={'M': 4})
    now = datetime.now()

    stale_id = await create_order(
        session_maker, user_id, items=[(product_id, 'M', 1, 150000)],
        order_number='ORD-300', created_at=now - timedelta(hours=3)
    )
    fresh_id = await create_order(
        session_maker, user_id, items=[(product_id, 'M', 1, 150000)],
        order_number='ORD-301', created_at=now - timedelta(minutes=10)
    )
    paid_id = await create_order(
        session_maker, user_id, items=[(product_id, 'M', 1, 150000)],
        order_number='ORD-302', created_at=now - timedelta(hours=3), status='paid'
    )

    assert await expire_stale_orders(session_maker, now=now) == 1

    stale = await get_order(session_maker, 'ORD-300')
    assert stale.status == 'expired'
    assert stale.payment_url is None
    assert (await get_payments(session_maker, stale_id))['ORD-300'].status == 'expired'
    assert await count_rows(session_maker, tables.OrderEvent, stale_id) == 1

    assert (await get_order(session_maker, 'ORD-301')).status == 'pending'
    assert (await get_order(session_maker, 'ORD-302')).status == 'paid'
    assert await count_rows(session_maker, tables.OrderEvent, fresh_id) == 0
    assert await count_rows(session_maker, tables.OrderEvent, paid_id) == 0

    assert await expire_stale_orders(session_maker, now=now) == 0


async def test_expiry_leaves_challenged_payments_alone(
    session_maker: async_sessionmaker[AsyncSession],
    reconciliation_service: ReconciliationService,
    user_id: uuid.UUID
):
    product_id = await create_product(session_maker, sizes={'M': 4})
    now = datetime.now()
    await create_order(
        session_maker, user_id, items=[(product_id, 'M', 1, 150000)],
        order_number='ORD-303', created_at=now - timedelta(hours=3)
    )

    await reconciliation_service.reconcile(
        MidtransNotification.model_validate(signed_notification('ORD-303', 'capture', '150000.00', fraud_status='challenge'))
    )

    assert await expire_stale_orders(session_maker, now=now) == 0
    assert (await get_order(session_maker, 'ORD-303')).status == 'pending'


async def test_order_event_is_published_and_removed(
    session_maker: async_sessionmaker[AsyncSession]
):
    order_id = uuid.uuid4()
    async with session_maker() as session, session.begin():
        await session.execute(insert_order_event(order_id, 'ORD-400', 'paid', 'paid', 'webhook'))

    producer = RecordingProducer()
    assert await process_order_event(session_maker, producer)  # type: ignore

    [(topic, key, value)] = producer.messages
    assert topic == 'order'
    assert key == str(order_id).encode()
    assert json.loads(value) == {
        'order_id': str(order_id),
        'order_number': 'ORD-400',
        'status': 'paid',
        'payment_status': 'paid',
        'source': 'webhook'
    }

    assert await count_rows(session_maker, tables.OrderEvent, order_id) == 0
    assert not await process_order_event(session_maker, producer)  # type: ignore


async def test_order_event_is_kept_when_kafka_is_down(
    session_maker: async_sessionmaker[AsyncSession]
):
    order_id = uuid.uuid4()
    async with session_maker() as session, session.begin():
        await session.execute(insert_order_event(order_id, 'ORD-401', 'cancelled', None, 'user'))

    assert await process_order_event(session_maker, RecordingProducer(fail=True))  # type: ignore

    async with session_maker() as session:
        processed_at = await session.scalar(
            select(func.max(tables.OrderEvent.processed_at)).where(tables.OrderEvent.order_id == order_id)
        )
    assert processed_at is not None
    assert await count_rows(session_maker, tables.OrderEvent, order_id) == 1

    # Backed off, not picked again right away
    assert not await process_order_event(session_maker, RecordingProducer())  # type: ignore
