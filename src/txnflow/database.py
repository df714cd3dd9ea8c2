import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import cast

import asyncpg.exceptions  # type: ignore[import-untyped]
from tortoise import Tortoise
from tortoise.backends.asyncpg.client import AsyncpgDBClient
from tortoise.backends.sqlite.client import SqliteClient
from tortoise.connection import connections

from txnflow.exceptions import ConfigurationError

_logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_NAME = 'default'
MODELS_MODULE = 'txnflow.models'

SupportedClient = SqliteClient | AsyncpgDBClient


def get_connection() -> SupportedClient:
    return cast(SupportedClient, connections.get(DEFAULT_CONNECTION_NAME))


@asynccontextmanager
async def tortoise_wrapper(
    url: str,
    timeout: int = 60,
) -> AsyncIterator[None]:
    """Initialize Tortoise with txnflow models, close connections when done"""
    if ':memory' in url:
        _logger.warning('Using in-memory database; data will be lost on exit')

    try:
        for attempt in range(timeout):
            try:
                await Tortoise.init(
                    db_url=url,
                    modules={'models': [MODELS_MODULE]},
                )

                conn = get_connection()
                try:
                    await conn.execute_query('SELECT 1')
                except asyncpg.exceptions.InvalidPasswordError as e:
                    raise ConfigurationError(f'{e.__class__.__name__}: {e}') from e

            except (OSError, asyncpg.exceptions.CannotConnectNowError) as e:
                _logger.warning("Can't establish database connection, attempt %s/%s: %s", attempt + 1, timeout, e)
                if attempt == timeout - 1:
                    raise
                await asyncio.sleep(1)
            else:
                break
        yield
    finally:
        await Tortoise.close_connections()


async def generate_schema() -> None:
    """Create missing tables and indexes; existing ones are left intact"""
    _logger.info('Creating database schema')
    await Tortoise.generate_schemas(safe=True)
