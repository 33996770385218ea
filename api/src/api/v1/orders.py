from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Body, Depends, Path
from pydantic import BaseModel, Field

from services.auth import AuthenticatedUser, get_current_user
from services.order import OrderService, get_order_service


router = APIRouter()


class StatusBody(BaseModel):
    order_id: str = Field(min_length=1, description='Order number exactly as stored, attempt suffixes are not stripped')
    new_status: str = Field(min_length=1)


@router.post(
    path='/status',
    description=
    'Sets the order status unconditionally, for back-office and support use<br>'
    'Bypasses the payment reconciliation guards, every call is logged'
)
async def set_order_status(
    body: Annotated[StatusBody, Body()],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    order = await order_service.set_order_status(body.order_id, body.new_status)
    return {
        'success': True,
        'order': order.model_dump(mode='json'),
        'message': f'Order {body.order_id} status updated to {body.new_status}'
    }


class ClearPaymentUrlBody(BaseModel):
    order_id: UUID


@router.post(
    path='/clear-payment-url',
    description='Clears the payment redirect URL, called by the storefront right after a successful payment'
)
async def clear_payment_url(
    body: Annotated[ClearPaymentUrlBody, Body()],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    await order_service.clear_payment_url(body.order_id)
    return {'success': True, 'message': 'Payment URL cleared successfully'}


@router.post(
    path='/{order_id}/cancel',
    description=
    'Cancels an order of the authenticated user<br>'
    'Payments that are already paid are left untouched'
)
async def cancel_order(
    order_id: Annotated[UUID, Path()],
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    await order_service.cancel_order(order_id, user)
    return {'success': True, 'message': 'Order cancelled'}


@router.post(
    path='/{order_id}/retry-payment',
    description=
    'Starts a new payment attempt for a pending order ("continue payment")<br>'
    'Previous pending attempts are cancelled, the new one gets its own gateway order id'
)
async def retry_payment(
    order_id: Annotated[UUID, Path()],
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    info = await order_service.retry_payment(order_id, user)
    return {'success': True, **info.model_dump(mode='json')}


@router.post(
    path='/{order_number}/sync',
    description='Fetches the latest transaction status from Midtrans and reconciles the order with it'
)
async def sync_payment_status(
    order_number: Annotated[str, Path()],
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    outcome = await order_service.sync_payment_status(order_number, user)
    return {'success': True, **outcome.model_dump(mode='json')}
