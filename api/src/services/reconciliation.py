import logging
from uuid import UUID, uuid4
from decimal import Decimal, InvalidOperation
from datetime import datetime
from typing import Annotated, Any
from dataclasses import dataclass
from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy import select, update, insert, not_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import db.postgres
import tables
from errors import NotFoundError, ValidationError, StoreError
from ordering import normalize_order_id, map_gateway_status, order_status_for
from services.midtrans import MidtransNotification
from services.stock import decrement_stock


logger = logging.getLogger('orders-service-reconciliation')

LIVE_PAYMENT_STATUSES: tuple[tables.PaymentStatus, ...] = ('pending', 'challenged')


class ReconciliationOutcome(BaseModel):
    order_id: UUID
    order_number: str
    gateway_order_id: str
    payment_status: tables.PaymentStatus
    order_status: tables.OrderStatus
    # False for duplicates, stale notifications and notifications for finished orders
    applied: bool


def _parse_amount(gross_amount: str | None) -> int | None:
    if gross_amount is None:
        return None

    try:
        amount = Decimal(gross_amount)
    except InvalidOperation:
        raise ValidationError(f'malformed gross_amount "{gross_amount}"')

    if not amount.is_finite() or amount != amount.to_integral_value():
        raise ValidationError('Payment amount validation failed', details={'gross_amount': gross_amount})

    return int(amount)


def insert_order_event(order_id: UUID, order_number: str, status: str, payment_status: str | None, source: str):
    return insert(tables.OrderEvent).values({
        tables.OrderEvent.id: uuid4(),
        tables.OrderEvent.order_id: order_id,
        tables.OrderEvent.created_at: datetime.now(),
        tables.OrderEvent.data: {
            'order_id': str(order_id),
            'order_number': order_number,
            'status': status,
            'payment_status': payment_status,
            'source': source
        }
    })


@dataclass(frozen=True)
class ReconciliationService:
    session_maker: async_sessionmaker[AsyncSession]

    async def reconcile(self, notification: MidtransNotification, source: str = 'webhook') -> ReconciliationOutcome:
        """Applies a gateway transaction state to the order it belongs to.

        Notifications may come late, twice, or concurrently. Only a `pending`
        order can change, and the change is a single conditional update, so
        whichever delivery loses the race sees zero matched rows and becomes a
        no-op. Moving to 'paid' also records one stock decrement for the order.
        """
        gateway_order_id = notification.order_id
        order_number = normalize_order_id(gateway_order_id)
        payment_status = map_gateway_status(notification.transaction_status, notification.fraud_status)
        order_status = order_status_for(payment_status)
        amount = _parse_amount(notification.gross_amount)

        try:
            async with self.session_maker() as session, session.begin():
                if order_status == 'pending':
                    applied = await self._update_live_payment(session, notification, order_number, payment_status)
                    order = await self._get_order(session, order_number, amount)
                    order_id = order.id
                    current_status = order.status
                else:
                    order_id = await self._transition_order(session, gateway_order_id, order_number, order_status, amount)
                    applied = order_id is not None

                    if order_id is None:
                        order = await self._get_order(session, order_number, amount)
                        order_id = order.id
                        current_status = order.status
                    else:
                        current_status = order_status
                        await self._record_payment(session, order_id, notification, payment_status, amount)

                        # An order reopened by the admin override already has its ledger row,
                        # stock moves once per order. The order update above serializes this check
                        if order_status == 'paid' and await session.scalar(
                            select(tables.StockDecrement.id)
                            .where(tables.StockDecrement.order_id == order_id)
                        ) is None:
                            await session.execute(insert(tables.StockDecrement).values({
                                tables.StockDecrement.id: uuid4(),
                                tables.StockDecrement.order_id: order_id,
                                tables.StockDecrement.created_at: datetime.now()
                            }))

                if applied:
                    await session.execute(insert_order_event(order_id, order_number, current_status, payment_status, source))
        except SQLAlchemyError as e:
            logger.exception(f'failed to reconcile gateway order "{gateway_order_id}"')
            raise StoreError(str(e)) from e

        if not applied:
            if payment_status == 'paid' and current_status != 'paid':
                # Money arrived for an order that already ended, needs a human
                logger.warning(
                    f'late payment for order {order_number} ({gateway_order_id}) '
                    f'ignored, order is already "{current_status}"'
                )
            else:
                logger.info(f'notification for {gateway_order_id} ({payment_status}) changed nothing, order is "{current_status}"')
        else:
            logger.info(f'order {order_number} is "{current_status}", payment {gateway_order_id} is "{payment_status}"')

        if applied and order_status == 'paid':
            await self._apply_stock_decrement(order_id)

        return ReconciliationOutcome(
            order_id=order_id,
            order_number=order_number,
            gateway_order_id=gateway_order_id,
            payment_status=payment_status,
            order_status=current_status,
            applied=applied
        )

    async def _transition_order(
        self,
        session: AsyncSession,
        gateway_order_id: str,
        order_number: str,
        order_status: tables.OrderStatus,
        amount: int | None
    ) -> UUID | None:
        conditions = [
            tables.Order.order_number == order_number,
            tables.Order.status == 'pending'
        ]
        if amount is not None:
            conditions.append(tables.Order.total == amount)

        if order_status != 'paid':
            # A failure of an attempt that a newer attempt replaced must not end the order
            conditions.append(not_(
                select(tables.Payment.id)
                .where(
                    tables.Payment.order_id == tables.Order.id,
                    tables.Payment.gateway_order_id == gateway_order_id,
                    tables.Payment.status.not_in(LIVE_PAYMENT_STATUSES)
                )
                .exists()
            ))

        values: dict[Any, Any] = {
            tables.Order.status: order_status,
            tables.Order.updated_at: datetime.now()
        }
        if order_status == 'paid':
            values[tables.Order.payment_url] = None

        return (await session.execute(
            update(tables.Order)
            .where(*conditions)
            .values(values)
            .returning(tables.Order.id)
            .execution_options(synchronize_session=False)
        )).scalar_one_or_none()

    async def _record_payment(
        self,
        session: AsyncSession,
        order_id: UUID,
        notification: MidtransNotification,
        payment_status: tables.PaymentStatus,
        amount: int | None
    ):
        now = datetime.now()
        proof = notification.model_dump(mode='json', exclude={'signature_key'})

        values: dict[Any, Any] = {
            tables.Payment.status: payment_status,
            tables.Payment.payment_proof: proof,
            tables.Payment.updated_at: now
        }
        if notification.transaction_id:
            values[tables.Payment.transaction_id] = notification.transaction_id

        result = await session.execute(
            update(tables.Payment)
            .where(
                tables.Payment.order_id == order_id,
                tables.Payment.gateway_order_id == notification.order_id,
                tables.Payment.status != 'paid'
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            known = await session.scalar(
                select(tables.Payment.id)
                .where(tables.Payment.gateway_order_id == notification.order_id)
            )
            if known is None:
                order_total = await session.scalar(select(tables.Order.total).where(tables.Order.id == order_id))
                await session.execute(insert(tables.Payment).values({
                    tables.Payment.id: uuid4(),
                    tables.Payment.order_id: order_id,
                    tables.Payment.gateway_order_id: notification.order_id,
                    tables.Payment.transaction_id: notification.transaction_id,
                    tables.Payment.status: payment_status,
                    tables.Payment.amount: amount if amount is not None else order_total,
                    tables.Payment.payment_proof: proof,
                    tables.Payment.created_at: now,
                    tables.Payment.updated_at: now
                }))

        if payment_status == 'paid':
            # Other attempts of the same order can't be paid anymore
            await session.execute(
                update(tables.Payment)
                .where(
                    tables.Payment.order_id == order_id,
                    tables.Payment.gateway_order_id != notification.order_id,
                    tables.Payment.status.in_(LIVE_PAYMENT_STATUSES)
                )
                .values({
                    tables.Payment.status: 'cancelled',
                    tables.Payment.updated_at: now
                })
                .execution_options(synchronize_session=False)
            )

    async def _update_live_payment(
        self,
        session: AsyncSession,
        notification: MidtransNotification,
        order_number: str,
        payment_status: tables.PaymentStatus
    ) -> bool:
        values: dict[Any, Any] = {
            tables.Payment.status: payment_status,
            tables.Payment.payment_proof: notification.model_dump(mode='json', exclude={'signature_key'}),
            tables.Payment.updated_at: datetime.now()
        }
        if notification.transaction_id:
            values[tables.Payment.transaction_id] = notification.transaction_id

        result = await session.execute(
            update(tables.Payment)
            .where(
                tables.Payment.gateway_order_id == notification.order_id,
                tables.Payment.status.in_(LIVE_PAYMENT_STATUSES),
                tables.Payment.status != payment_status,
                tables.Payment.order_id.in_(
                    select(tables.Order.id)
                    .where(
                        tables.Order.order_number == order_number,
                        tables.Order.status == 'pending'
                    )
                )
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _get_order(self, session: AsyncSession, order_number: str, amount: int | None) -> tables.Order:
        order = await session.scalar(
            select(tables.Order)
            .where(tables.Order.order_number == order_number)
        )
        if order is None:
            raise NotFoundError(f'Order {order_number} not found', details={'order_id': order_number})

        if amount is not None and order.total != amount:
            logger.error(f'amount mismatch for order {order_number}: expected {order.total}, received {amount}')
            raise ValidationError('Payment amount validation failed', details={'order_id': order_number})

        return order

    async def _apply_stock_decrement(self, order_id: UUID):
        # Best effort, the status change is already committed and the worker retries
        try:
            async with self.session_maker() as session, session.begin():
                await decrement_stock(session, order_id)
        except SQLAlchemyError:
            logger.exception(f'stock decrement for order {order_id} failed, left for the worker')


def get_reconciliation_service(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)]
) -> ReconciliationService:
    return ReconciliationService(session_maker=session_maker)
