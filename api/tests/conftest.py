import os
import sys
import uuid
import pathlib
import pytest
import httpx
from asgi_lifespan import LifespanManager
from pytest_httpx import HTTPXMock
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from starlette import status

sys.path.append(str(pathlib.Path(__file__).parent.parent/'src'))
sys.path.append(str(pathlib.Path(__file__).parent))

os.environ.setdefault('ORDERS_POSTGRES_USER', 'orders')
os.environ.setdefault('ORDERS_POSTGRES_PASSWORD', 'orders')
os.environ.setdefault('ORDERS_POSTGRES_DB', 'orders')
os.environ.setdefault('ORDERS_MIDTRANS_SERVER_KEY', 'SB-Mid-server-test-key')
os.environ.setdefault('ORDERS_SUPABASE_URL', 'https://supabase.test')
os.environ.setdefault('ORDERS_SUPABASE_ANON_KEY', 'anon-test-key')

import db.postgres
import tables
from main import app
from services.auth import get_supabase_auth
from services.midtrans import get_midtrans_client
from services.reconciliation import ReconciliationService


@pytest.fixture
async def session_maker(tmp_path: pathlib.Path):
    # A file, not :memory:, so that every session gets its own connection
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path/'orders.db'}')

    async with engine.begin() as conn:
        await conn.run_sync(tables.Base.metadata.create_all)

    yield async_sessionmaker(engine)

    await engine.dispose()


@pytest.fixture
def reconciliation_service(session_maker: async_sessionmaker[AsyncSession]):
    return ReconciliationService(session_maker=session_maker)


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def supabase_users(httpx_mock: HTTPXMock):
    """
    Supabase auth stand-in: the bearer token is the user id itself,
    anything that isn't a UUID is rejected
    """
    def on_get_user(request: httpx.Request):
        token = request.headers.get('Authorization', '').removeprefix('Bearer ')
        try:
            user_id = uuid.UUID(token)
        except ValueError:
            return httpx.Response(status_code=status.HTTP_401_UNAUTHORIZED, json={'msg': 'invalid JWT'})

        return httpx.Response(
            status_code=status.HTTP_200_OK,
            json={'id': str(user_id), 'email': 'customer@example.com', 'aud': 'authenticated'}
        )

    httpx_mock.add_callback(
        callback=on_get_user,
        url='https://supabase.test/auth/v1/user',
        is_reusable=True,
        is_optional=True
    )


@pytest.fixture
async def api_client(session_maker: async_sessionmaker[AsyncSession], supabase_users):
    app.dependency_overrides[db.postgres.get_session_maker] = lambda: session_maker

    async with LifespanManager(app):
        async with httpx.AsyncClient(
            mounts={
                'http://tests': httpx.ASGITransport(app=app),
                'https://': httpx.AsyncHTTPTransport()
            },
            base_url='http://tests'
        ) as client:
            yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
async def clear_cached_clients():
    yield

    # Cached clients are bound to the event loop of the test that created them
    if get_midtrans_client.cache_info().currsize:
        await get_midtrans_client().aclose()
        get_midtrans_client.cache_clear()
    if get_supabase_auth.cache_info().currsize:
        await get_supabase_auth().client.aclose()
        get_supabase_auth.cache_clear()
