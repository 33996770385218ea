import json
import asyncio
import logging
import aiokafka
import aiokafka.errors
from datetime import datetime, timedelta
from sqlalchemy import select, update, nulls_first, or_
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from settings import settings, kafka_settings


logger = logging.getLogger('orders-worker-order-events-loop')


async def order_events_loop(
    session_maker: async_sessionmaker[AsyncSession],
    kafka_producer: aiokafka.AIOKafkaProducer
):
    while True:
        if not await process_order_event(session_maker, kafka_producer):
            await asyncio.sleep(settings.order_events_loop_sleep_duration)


async def process_order_event(
    session_maker: async_sessionmaker[AsyncSession],
    kafka_producer: aiokafka.AIOKafkaProducer
) -> bool:
    async with session_maker() as session:
        event = await session.scalar(
            select(tables.OrderEvent)
            .where(or_(
                tables.OrderEvent.processed_at.is_(None),
                tables.OrderEvent.processed_at < (datetime.now() - timedelta(seconds=settings.order_events_loop_sleep_duration))
            ))
            .order_by(nulls_first(tables.OrderEvent.processed_at.asc()), tables.OrderEvent.created_at.asc())
            .with_for_update(skip_locked=True)
            .limit(1)
        )

        if event is None:
            return False

        if await publish_order_event(event, kafka_producer):
            await session.delete(event)
        else:
            await session.execute(
                update(tables.OrderEvent)
                .where(tables.OrderEvent.id == event.id)
                .values({tables.OrderEvent.processed_at: datetime.now()})
            )

        await session.commit()

    return True


async def publish_order_event(event: tables.OrderEvent, kafka_producer: aiokafka.AIOKafkaProducer) -> bool:
    try:
        # Keyed by order, so events of one order keep their order within a partition
        await kafka_producer.send_and_wait(
            topic=kafka_settings.order_topic,
            key=str(event.order_id).encode(),
            value=json.dumps(event.data).encode()
        )
    except aiokafka.errors.KafkaError as e:
        logger.warning(f'couldn\'t publish event {event.id} of order {event.order_id}: {e!r}')
        return False

    logger.info(f'sent event about order {event.order_id} to the "{kafka_settings.order_topic}" topic')
    return True
