import httpx
import logging
from uuid import UUID
from functools import lru_cache
from typing import Annotated
from dataclasses import dataclass
from fastapi import Depends, Header
from pydantic import BaseModel

from errors import UnauthenticatedError, UpstreamError
from settings import supabase_settings


logger = logging.getLogger('orders-service-auth')


class AuthenticatedUser(BaseModel):
    id: UUID
    email: str | None = None


@dataclass(frozen=True)
class SupabaseAuth:
    client: httpx.AsyncClient

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        # https://supabase.com/docs/reference/api/get-user
        try:
            response = await self.client.get(
                url='/auth/v1/user',
                headers={'Authorization': f'Bearer {access_token}'}
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f'couldn\'t reach supabase auth: {e!r}') from e

        if response.status_code in (401, 403):
            raise UnauthenticatedError()
        if response.status_code != 200:
            logger.error(f'supabase auth responded with {response.status_code}: {response.text}')
            raise UpstreamError(f'supabase auth responded with {response.status_code}')

        return AuthenticatedUser.model_validate(response.json())


@lru_cache
def get_supabase_auth() -> SupabaseAuth:
    return SupabaseAuth(
        client=httpx.AsyncClient(
            base_url=supabase_settings.url,
            headers={'apikey': supabase_settings.anon_key},
            timeout=supabase_settings.connection_timeout_sec
        )
    )


async def get_current_user(
    auth: Annotated[SupabaseAuth, Depends(get_supabase_auth)],
    authorization: Annotated[str | None, Header()] = None
) -> AuthenticatedUser:
    if not authorization:
        raise UnauthenticatedError('Authorization header missing')

    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        raise UnauthenticatedError('Authorization header must be a bearer token')

    return await auth.get_user(token)
