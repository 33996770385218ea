import logging
from typing import Annotated, Any
from fastapi import APIRouter, Body, Depends

from errors import SignatureError
from services.midtrans import MidtransClient, WebhookNotification, get_midtrans_client
from services.reconciliation import ReconciliationService, get_reconciliation_service


logger = logging.getLogger('orders-api-midtrans')

router = APIRouter()


@router.post(
    path='/notification',
    description=
    'Midtrans HTTP notification endpoint<br>'
    'Deliveries may be duplicated or arrive out of order, every one of them is answered with 200 '
    'once verified, so Midtrans stops retrying'
)
async def midtrans_notification(
    notification: Annotated[WebhookNotification, Body()],
    midtrans_client: Annotated[MidtransClient, Depends(get_midtrans_client)],
    reconciliation_service: Annotated[ReconciliationService, Depends(get_reconciliation_service)]
) -> dict[str, Any]:
    if not midtrans_client.verify_signature(notification):
        logger.warning(f'invalid signature for notification about "{notification.order_id}", rejected')
        raise SignatureError()

    outcome = await reconciliation_service.reconcile(notification)
    return {'success': True, **outcome.model_dump(mode='json')}
