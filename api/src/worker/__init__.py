import aiokafka
import logging
import anyio

import db.postgres
from .stock import stock_loop
from .expiry import expiry_loop
from .order_events import order_events_loop
from settings import kafka_settings


logger = logging.getLogger('orders-worker')


async def run():
    kafka_producer = aiokafka.AIOKafkaProducer(bootstrap_servers=kafka_settings.bootstrap_servers)
    await kafka_producer.start()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(stock_loop, db.postgres.session_maker)
            tg.start_soon(expiry_loop, db.postgres.session_maker)
            tg.start_soon(order_events_loop, db.postgres.session_maker, kafka_producer)

            logger.info('worker is started')
    finally:
        await kafka_producer.stop()
        await db.postgres.engine.dispose()
