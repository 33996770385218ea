import hmac
import httpx
import hashlib
import logging
from functools import lru_cache
from typing import Any
from dataclasses import dataclass
from pydantic import BaseModel, ConfigDict, Field

from errors import NotFoundError, UpstreamError
from settings import midtrans_settings


logger = logging.getLogger('orders-service-midtrans')


class MidtransNotification(BaseModel):
    """
    Transaction state as Midtrans reports it, either pushed to the webhook
    or fetched from the status API
    """
    model_config = ConfigDict(extra='allow')

    order_id: str = Field(min_length=1)
    transaction_status: str = Field(min_length=1)
    fraud_status: str | None = None
    transaction_id: str | None = None
    status_code: str | None = None
    gross_amount: str | None = None
    signature_key: str | None = None
    payment_type: str | None = None


class WebhookNotification(MidtransNotification):
    # Everything the signature is computed from has to be present
    status_code: str = Field(min_length=1)
    gross_amount: str = Field(min_length=1)
    signature_key: str = Field(min_length=1)


class SnapTransaction(BaseModel):
    token: str
    redirect_url: str


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    # https://docs.midtrans.com/docs/https-notification-webhooks#verifying-notification-authenticity
    return hashlib.sha512(f'{order_id}{status_code}{gross_amount}{server_key}'.encode()).hexdigest()


@dataclass(frozen=True)
class MidtransClient:
    server_key: str
    snap_client: httpx.AsyncClient
    api_client: httpx.AsyncClient

    def verify_signature(self, notification: MidtransNotification) -> bool:
        if not (notification.signature_key and notification.status_code and notification.gross_amount):
            return False

        expected = compute_signature(
            notification.order_id,
            notification.status_code,
            notification.gross_amount,
            self.server_key
        )
        return hmac.compare_digest(expected, notification.signature_key)

    async def create_transaction(self, payload: dict[str, Any]) -> SnapTransaction:
        # https://docs.midtrans.com/reference/backend-integration
        try:
            response = await self.snap_client.post(url='/snap/v1/transactions', json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f'couldn\'t reach midtrans snap: {e!r}') from e

        if response.status_code not in (200, 201):
            logger.error(f'midtrans snap responded with {response.status_code}: {response.text}')
            raise UpstreamError(f'midtrans snap responded with {response.status_code}')

        response_json = response.json()
        if not response_json.get('token') or not response_json.get('redirect_url'):
            logger.error(f'unexpected midtrans snap response: {response.text}')
            raise UpstreamError(f'unexpected midtrans snap response: {response_json}')

        return SnapTransaction(token=response_json['token'], redirect_url=response_json['redirect_url'])

    async def get_transaction_status(self, gateway_order_id: str) -> MidtransNotification:
        # https://docs.midtrans.com/reference/get-transaction-status
        try:
            response = await self.api_client.get(url=f'/v2/{gateway_order_id}/status')
        except httpx.HTTPError as e:
            raise UpstreamError(f'couldn\'t reach midtrans api: {e!r}') from e

        if response.status_code != 200:
            logger.error(f'midtrans status api responded with {response.status_code}: {response.text}')
            raise UpstreamError(f'midtrans status api responded with {response.status_code}')

        response_json = response.json()

        # Midtrans answers 200 and puts the real code in the body
        if response_json.get('status_code') == '404':
            raise NotFoundError(f'midtrans has no transaction for "{gateway_order_id}"')

        if 'transaction_status' not in response_json:
            raise UpstreamError(f'unexpected midtrans status response: {response_json}')

        return MidtransNotification.model_validate(response_json)

    async def aclose(self):
        await self.snap_client.aclose()
        await self.api_client.aclose()


@lru_cache
def get_midtrans_client() -> MidtransClient:
    # One client per process, created on first use
    auth = httpx.BasicAuth(midtrans_settings.server_key, '')
    headers = {'Accept': 'application/json'}

    return MidtransClient(
        server_key=midtrans_settings.server_key,
        snap_client=httpx.AsyncClient(
            base_url=midtrans_settings.snap_base_url,
            auth=auth,
            headers=headers,
            timeout=midtrans_settings.connection_timeout_sec
        ),
        api_client=httpx.AsyncClient(
            base_url=midtrans_settings.api_base_url,
            auth=auth,
            headers=headers,
            timeout=midtrans_settings.connection_timeout_sec
        )
    )
