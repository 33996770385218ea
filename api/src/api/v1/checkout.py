from typing import Annotated, Literal, Any
from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field

from services.auth import AuthenticatedUser, get_current_user
from services.order import CartItem, CustomerInfo, OrderService, get_order_service


router = APIRouter()


class CheckoutBody(BaseModel):
    items: list[CartItem]
    customer: CustomerInfo
    shipping_method: Literal['regular', 'express'] = Field(default='regular')
    payment_method: str = Field(default='Midtrans')
    total: int | None = Field(
        default=None,
        description='Total shown to the customer, checkout is refused if it differs from the recalculated one'
    )


@router.post(
    path='',
    description=
    'Creates a pending order and a Midtrans Snap transaction for it<br>'
    'The customer has to follow `payment_url` to pay, the order is reconciled from Midtrans notifications'
)
async def checkout(
    body: Annotated[CheckoutBody, Body()],
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    order_service: Annotated[OrderService, Depends(get_order_service)]
) -> dict[str, Any]:
    info = await order_service.checkout(
        user=user,
        items=body.items,
        customer=body.customer,
        shipping_method=body.shipping_method,
        payment_method=body.payment_method,
        expected_total=body.total
    )
    return {'success': True, **info.model_dump(mode='json')}
