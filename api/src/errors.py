from typing import Any
from starlette import status


class OrdersError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: str = 'Internal server error'

    def __init__(self, message: str | None = None, details: Any = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details


class ValidationError(OrdersError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = 'Invalid request'


class NotFoundError(OrdersError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = 'Order not found'


class UnauthenticatedError(OrdersError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = 'User not authenticated'


class SignatureError(OrdersError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = 'Invalid signature'


class StoreError(OrdersError):
    # Internal detail is only logged, clients always see `public_message`
    public_message = 'Internal server error'


class UpstreamError(OrdersError):
    status_code = status.HTTP_502_BAD_GATEWAY
    public_message = 'Payment gateway unavailable, please retry'
