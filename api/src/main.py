import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import SQLAlchemyError
from starlette import status

import db.postgres
from errors import OrdersError, StoreError
from api.v1 import checkout, midtrans, orders
from services.auth import get_supabase_auth
from services.midtrans import get_midtrans_client


logger = logging.getLogger('orders-api')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(name)s %(levelname)s: %(message)s'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield

    # Clients are created lazily, only close the ones that exist
    if get_midtrans_client.cache_info().currsize:
        await get_midtrans_client().aclose()
        get_midtrans_client.cache_clear()
    if get_supabase_auth.cache_info().currsize:
        await get_supabase_auth().client.aclose()
        get_supabase_auth.cache_clear()

    await db.postgres.engine.dispose()


app = FastAPI(
    title='Storefront orders',
    lifespan=lifespan,
    docs_url='/api/openapi',
    openapi_url='/api/openapi.json',
    default_response_class=ORJSONResponse
)


@app.exception_handler(OrdersError)
async def orders_error_handler(request: Request, exc: OrdersError):
    if isinstance(exc, StoreError):
        # Details stay in the logs
        return ORJSONResponse(status_code=exc.status_code, content={'error': exc.public_message})

    content = {'error': exc.message}
    if exc.details is not None:
        content['details'] = jsonable_encoder(exc.details)
    return ORJSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'error': 'Invalid request', 'details': jsonable_encoder(exc.errors())}
    )


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f'store error while handling {request.method} {request.url.path}: {exc!r}')
    return ORJSONResponse(
        status_code=StoreError.status_code,
        content={'error': StoreError.public_message}
    )


app.include_router(midtrans.router, prefix='/api/v1/midtrans', tags=['midtrans'])
app.include_router(orders.router, prefix='/api/v1/orders', tags=['orders'])
app.include_router(checkout.router, prefix='/api/v1/checkout', tags=['checkout'])
