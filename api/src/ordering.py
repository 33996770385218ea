"""
Order number helpers and the Midtrans -> internal status mapping.

Nothing here touches the network or the database.
"""
import time
import random
import logging
from datetime import datetime

from tables import OrderStatus, PaymentStatus


logger = logging.getLogger('orders-ordering')

ATTEMPT_SEPARATOR = '-ATTEMPT-'
MAX_GATEWAY_ORDER_ID_LENGTH = 50  # Midtrans limit for transaction_details.order_id


def normalize_order_id(order_id: str) -> str:
    """Returns the order number an (attempt suffixed) gateway order id belongs to.

    The first separator wins, anything after it is the attempt's own token.
    """
    if not order_id:
        return order_id

    base, separator, _ = order_id.partition(ATTEMPT_SEPARATOR)
    return base if separator else order_id


def build_attempt_id(base_order_number: str, token: str | None = None) -> str:
    """Builds a fresh gateway order id for a retried checkout.

    Midtrans refuses to reuse an order id, so every new payment attempt gets
    `<base>-ATTEMPT-<token>`. When too long, only the base is truncated.
    The base is kept verbatim so it normalizes back to itself, except an
    empty one, which Midtrans would refuse and becomes `ORDER`.
    """
    base = base_order_number or 'ORDER'
    suffix = f'{ATTEMPT_SEPARATOR}{token if token is not None else int(time.time() * 1000)}'

    if len(base) + len(suffix) <= MAX_GATEWAY_ORDER_ID_LENGTH:
        return f'{base}{suffix}'

    return f'{base[:max(MAX_GATEWAY_ORDER_ID_LENGTH - len(suffix), 0)]}{suffix}'


def generate_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f'TEE-{now:%Y%m%d}-{random.randrange(10000):04d}'


# https://docs.midtrans.com/docs/https-notification-webhooks#transaction-status-description
_STATUS_MAP: dict[str, PaymentStatus] = {
    'pending': 'pending',
    'authorize': 'pending',
    'deny': 'failed',
    'failure': 'failed',
    'cancel': 'cancelled',
    'expire': 'expired'
}


def map_gateway_status(transaction_status: str, fraud_status: str | None = None) -> PaymentStatus:
    """Maps a Midtrans transaction (and fraud) status to a payment status.

    Total: unknown statuses, refunds and chargebacks end up as 'failed'.
    """
    transaction_status = (transaction_status or '').strip().lower()
    fraud_status = (fraud_status or '').strip().lower() or None

    if transaction_status == 'capture':
        return 'paid' if fraud_status == 'accept' else 'challenged'

    if transaction_status == 'settlement':
        # Settlement normally comes without fraud status, a non accepted one still holds the money
        return 'paid' if fraud_status in (None, 'accept') else 'challenged'

    status = _STATUS_MAP.get(transaction_status)
    if status is None:
        logger.warning(f'unknown midtrans transaction status "{transaction_status}", treating as failed')
        return 'failed'

    return status


def order_status_for(payment_status: PaymentStatus) -> OrderStatus:
    if payment_status == 'challenged':
        return 'pending'
    return payment_status  # type: ignore
