import logging
from uuid import UUID, uuid4
from datetime import datetime
from typing import Annotated, Any, Literal, get_args
from dataclasses import dataclass
from fastapi import Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import db.postgres
import tables
from errors import NotFoundError, UnauthenticatedError, UpstreamError, ValidationError
from ordering import build_attempt_id, generate_order_number
from settings import settings, midtrans_settings
from services.auth import AuthenticatedUser
from services.midtrans import MidtransClient, get_midtrans_client
from services.reconciliation import (
    ReconciliationOutcome,
    ReconciliationService,
    get_reconciliation_service,
    insert_order_event
)


logger = logging.getLogger('orders-service-order')

ORDER_NUMBER_ATTEMPTS = 5


class CartItem(BaseModel):
    product_id: UUID
    size: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class CustomerInfo(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = Field(min_length=1)
    shipping_address: str = Field(min_length=1)


class CheckoutInfo(BaseModel):
    order_id: UUID
    order_number: str
    gateway_order_id: str
    token: str
    payment_url: str


class OrderInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: tables.OrderStatus
    total: int
    payment_url: str | None
    updated_at: datetime


@dataclass(frozen=True)
class OrderService:
    session_maker: async_sessionmaker[AsyncSession]
    midtrans_client: MidtransClient
    reconciliation_service: ReconciliationService

    async def checkout(
        self,
        user: AuthenticatedUser,
        items: list[CartItem],
        customer: CustomerInfo,
        shipping_method: Literal['regular', 'express'] = 'regular',
        payment_method: str = 'Midtrans',
        expected_total: int | None = None
    ) -> CheckoutInfo:
        if not items:
            raise ValidationError('No items in cart')

        # Prices and stock always come from the database, never from the client
        async with self.session_maker() as session:
            products = {
                product.id: product
                for product in (await session.scalars(
                    select(tables.Product)
                    .where(tables.Product.id.in_({item.product_id for item in items}))
                )).all()
            }
            stock = {
                (size.product_id, size.size): size.stock
                for size in (await session.scalars(
                    select(tables.ProductSize)
                    .where(tables.ProductSize.product_id.in_(products.keys()))
                )).all()
            }

        total = 0
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise ValidationError(f'Product {item.product_id} not found')

            available = stock.get((item.product_id, item.size), 0)
            if available < item.quantity:
                raise ValidationError(
                    f'Insufficient stock for product {item.product_id} size {item.size}',
                    details={'available': available, 'requested': item.quantity}
                )

            total += product.price * item.quantity

        shipping_cost = settings.express_shipping_cost if shipping_method == 'express' else 0
        total += shipping_cost

        if expected_total is not None and expected_total != total:
            logger.warning(f'price validation failed: submitted {expected_total}, calculated {total}')
            raise ValidationError('Price validation failed', details={'calculated_total': total})

        order_id = uuid4()
        order_number = await self._insert_order(order_id, user, items, products, customer, shipping_method, payment_method, total)

        item_details = [
            {
                'id': str(item.product_id),
                'price': products[item.product_id].price,
                'quantity': item.quantity,
                'name': f'{products[item.product_id].name} ({item.size})'[:50]
            }
            for item in items
        ]
        if shipping_cost:
            item_details.append({'id': 'shipping', 'price': shipping_cost, 'quantity': 1, 'name': 'Ongkos Kirim Express'})

        try:
            transaction = await self.midtrans_client.create_transaction(
                self._transaction_payload(order_number, order_number, total, customer, item_details)
            )
        except UpstreamError:
            await self._fail_order(order_id, order_number)
            raise

        async with self.session_maker() as session, session.begin():
            await session.execute(
                update(tables.Order)
                .where(tables.Order.id == order_id)
                .values({tables.Order.payment_url: transaction.redirect_url})
            )

        logger.info(f'order {order_number} created for user {user.id}, total {total}')

        return CheckoutInfo(
            order_id=order_id,
            order_number=order_number,
            gateway_order_id=order_number,
            token=transaction.token,
            payment_url=transaction.redirect_url
        )

    async def retry_payment(self, order_id: UUID, user: AuthenticatedUser) -> CheckoutInfo:
        async with self.session_maker() as session:
            order = await session.scalar(
                select(tables.Order)
                .where(tables.Order.id == order_id, tables.Order.user_id == user.id)
            )
            if order is None:
                raise NotFoundError()
            session.expunge(order)

        if order.status != 'pending':
            raise ValidationError('Order is not in pending status', details={'current_status': order.status})

        gateway_order_id = build_attempt_id(order.order_number)
        # Older orders may lack customer details, Midtrans only needs them for display
        customer = CustomerInfo.model_construct(
            name=order.customer_name or (user.email or 'Customer').split('@')[0],
            email=order.customer_email or user.email or '',
            phone=order.customer_phone or '-',
            shipping_address=order.shipping_address or '-'
        )
        transaction = await self.midtrans_client.create_transaction(
            self._transaction_payload(gateway_order_id, order.order_number, order.total, customer)
        )

        now = datetime.now()
        async with self.session_maker() as session, session.begin():
            result = await session.execute(
                update(tables.Order)
                .where(tables.Order.id == order.id, tables.Order.status == 'pending')
                .values({
                    tables.Order.payment_url: transaction.redirect_url,
                    tables.Order.payment_method: 'Midtrans',
                    tables.Order.updated_at: now
                })
            )
            if result.rowcount == 0:
                # A notification finished the order while the new session was being created
                raise ValidationError('Order is not in pending status')

            await session.execute(
                update(tables.Payment)
                .where(tables.Payment.order_id == order.id, tables.Payment.status == 'pending')
                .values({tables.Payment.status: 'cancelled', tables.Payment.updated_at: now})
            )
            await session.execute(insert(tables.Payment).values({
                tables.Payment.id: uuid4(),
                tables.Payment.order_id: order.id,
                tables.Payment.gateway_order_id: gateway_order_id,
                tables.Payment.status: 'pending',
                tables.Payment.amount: order.total,
                tables.Payment.payment_proof: {'source': 'retry-payment', 'generated_at': now.isoformat()},
                tables.Payment.created_at: now,
                tables.Payment.updated_at: now
            }))

        logger.info(f'new payment attempt {gateway_order_id} for order {order.order_number}')

        return CheckoutInfo(
            order_id=order.id,
            order_number=order.order_number,
            gateway_order_id=gateway_order_id,
            token=transaction.token,
            payment_url=transaction.redirect_url
        )

    async def cancel_order(self, order_id: UUID, user: AuthenticatedUser | None):
        if user is None:
            raise UnauthenticatedError()

        now = datetime.now()
        async with self.session_maker() as session, session.begin():
            # Scoped to the owner: someone else's order looks exactly like a missing one
            order_number = (await session.execute(
                update(tables.Order)
                .where(tables.Order.id == order_id, tables.Order.user_id == user.id)
                .values({
                    tables.Order.status: 'cancelled',
                    tables.Order.payment_url: None,
                    tables.Order.updated_at: now
                })
                .returning(tables.Order.order_number)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()

            if order_number is None:
                raise NotFoundError()

            await session.execute(insert_order_event(order_id, order_number, 'cancelled', None, 'user'))

        try:
            async with self.session_maker() as session, session.begin():
                await session.execute(
                    update(tables.Payment)
                    .where(tables.Payment.order_id == order_id, tables.Payment.status != 'paid')
                    .values({tables.Payment.status: 'cancelled', tables.Payment.updated_at: now})
                )
        except SQLAlchemyError as e:
            logger.warning(f'failed to mark payments of order {order_id} as cancelled: {e!r}')

        logger.info(f'order {order_number} cancelled by user {user.id}')

    async def set_order_status(self, order_number: str, new_status: str) -> OrderInfo:
        if new_status not in get_args(tables.OrderStatus):
            raise ValidationError(
                f'Unknown order status "{new_status}"',
                details={'allowed': list(get_args(tables.OrderStatus))}
            )

        async with self.session_maker() as session, session.begin():
            order = (await session.execute(
                update(tables.Order)
                .where(tables.Order.order_number == order_number)
                .values({
                    tables.Order.status: new_status,
                    tables.Order.updated_at: datetime.now()
                })
                .returning(tables.Order)
                .execution_options(synchronize_session=False)
            )).scalar_one_or_none()

            if order is None:
                raise NotFoundError(f'Order {order_number} not found', details={'order_id': order_number})

            info = OrderInfo.model_validate(order)
            await session.execute(insert_order_event(order.id, order_number, new_status, None, 'admin'))

        logger.warning(f'order {order_number} status overridden to "{new_status}"')
        return info

    async def clear_payment_url(self, order_id: UUID):
        async with self.session_maker() as session, session.begin():
            result = await session.execute(
                update(tables.Order)
                .where(tables.Order.id == order_id)
                .values({tables.Order.payment_url: None})
            )
            if result.rowcount == 0:
                raise NotFoundError()

        logger.info(f'payment url cleared for order {order_id}')

    async def sync_payment_status(self, order_number: str, user: AuthenticatedUser) -> ReconciliationOutcome:
        async with self.session_maker() as session:
            order_id = await session.scalar(
                select(tables.Order.id)
                .where(tables.Order.order_number == order_number, tables.Order.user_id == user.id)
            )
            if order_id is None:
                raise NotFoundError()

            # The latest attempt is the one the customer may have paid
            gateway_order_id = await session.scalar(
                select(tables.Payment.gateway_order_id)
                .where(tables.Payment.order_id == order_id)
                .order_by(tables.Payment.created_at.desc())
                .limit(1)
            ) or order_number

        transaction = await self.midtrans_client.get_transaction_status(gateway_order_id)
        return await self.reconciliation_service.reconcile(transaction, source='sync')

    async def _insert_order(
        self,
        order_id: UUID,
        user: AuthenticatedUser,
        items: list[CartItem],
        products: dict[UUID, tables.Product],
        customer: CustomerInfo,
        shipping_method: str,
        payment_method: str,
        total: int
    ) -> str:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            order_number = generate_order_number()
            now = datetime.now()

            try:
                async with self.session_maker() as session, session.begin():
                    await session.execute(insert(tables.Order).values({
                        tables.Order.id: order_id,
                        tables.Order.order_number: order_number,
                        tables.Order.user_id: user.id,
                        tables.Order.status: 'pending',
                        tables.Order.total: total,
                        tables.Order.payment_method: payment_method,
                        tables.Order.shipping_method: shipping_method,
                        tables.Order.shipping_address: customer.shipping_address,
                        tables.Order.customer_name: customer.name,
                        tables.Order.customer_email: customer.email,
                        tables.Order.customer_phone: customer.phone,
                        tables.Order.created_at: now,
                        tables.Order.updated_at: now
                    }))
                    await session.execute(insert(tables.OrderItem), [
                        {
                            'id': uuid4(),
                            'order_id': order_id,
                            'product_id': item.product_id,
                            'size': item.size,
                            'quantity': item.quantity,
                            'price': products[item.product_id].price
                        }
                        for item in items
                    ])
                    await session.execute(insert(tables.Payment).values({
                        tables.Payment.id: uuid4(),
                        tables.Payment.order_id: order_id,
                        tables.Payment.gateway_order_id: order_number,
                        tables.Payment.status: 'pending',
                        tables.Payment.amount: total,
                        tables.Payment.created_at: now,
                        tables.Payment.updated_at: now
                    }))
                return order_number
            except IntegrityError:
                logger.warning(f'order number {order_number} is taken, generating another one')

        raise ValidationError('Couldn\'t allocate an order number, please retry')

    async def _fail_order(self, order_id: UUID, order_number: str):
        now = datetime.now()
        async with self.session_maker() as session, session.begin():
            await session.execute(
                update(tables.Order)
                .where(tables.Order.id == order_id, tables.Order.status == 'pending')
                .values({tables.Order.status: 'failed', tables.Order.updated_at: now})
            )
            await session.execute(
                update(tables.Payment)
                .where(tables.Payment.order_id == order_id, tables.Payment.status == 'pending')
                .values({tables.Payment.status: 'failed', tables.Payment.updated_at: now})
            )
        logger.warning(f'order {order_number} failed, midtrans refused the transaction')

    def _transaction_payload(
        self,
        gateway_order_id: str,
        order_number: str,
        total: int,
        customer: CustomerInfo,
        item_details: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        base_url = settings.public_base_url.rstrip('/')

        # https://docs.midtrans.com/reference/request-body-json-parameter
        payload: dict[str, Any] = {
            'transaction_details': {
                'order_id': gateway_order_id,
                'gross_amount': total
            },
            'customer_details': {
                'first_name': customer.name.strip(),
                'email': customer.email.strip(),
                'phone': ''.join(c for c in customer.phone if c.isdigit()),
                'shipping_address': {
                    'first_name': customer.name.strip(),
                    'address': customer.shipping_address.strip(),
                    'country_code': 'IDN'
                }
            },
            'credit_card': {'secure': True},
            'callbacks': {
                'finish': f'{base_url}/finish-payment?order_id={gateway_order_id}',
                'unfinish': f'{base_url}/payment-error?order_id={order_number}&transaction_status=cancel&error_type=cancelled',
                'error': f'{base_url}/payment-error?order_id={order_number}&transaction_status=failure&error_type=system'
            }
        }
        if item_details:
            payload['item_details'] = item_details
        if midtrans_settings.is_production:
            payload['custom_expiry'] = {'expiry_duration': settings.order_expiry_minutes, 'unit': 'minute'}

        return payload


def get_order_service(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    midtrans_client: Annotated[MidtransClient, Depends(get_midtrans_client)],
    reconciliation_service: Annotated[ReconciliationService, Depends(get_reconciliation_service)]
) -> OrderService:
    return OrderService(
        session_maker=session_maker,
        midtrans_client=midtrans_client,
        reconciliation_service=reconciliation_service
    )
