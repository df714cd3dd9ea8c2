import asyncio
import logging
import platform
import time
from contextlib import AbstractAsyncContextManager
from http import HTTPStatus
from typing import Any
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

import aiohttp
import orjson
from aiolimiter import AsyncLimiter

from txnflow import __version__
from txnflow.config import ResolvedHttpConfig
from txnflow.exceptions import FrameworkException
from txnflow.exceptions import RPCTransportError
from txnflow.prometheus import Metrics
from txnflow.utils import json_dumps_plain

safe_exceptions = (
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ClientConnectorError,
    aiohttp.ClientResponseError,
    aiohttp.ClientPayloadError,
)

# NOTE: Response bodies are attached to errors; keep them readable
MAX_BODY_LENGTH = 512


class HTTPGateway(AbstractAsyncContextManager['HTTPGateway']):
    """Base class for clients which connect to remote HTTP endpoints"""

    def __init__(self, url: str, http_config: ResolvedHttpConfig) -> None:
        self._http_config = http_config
        self._http = _HTTPGateway(url, self._http_config)

    async def __aenter__(self) -> 'HTTPGateway':
        """Create underlying aiohttp session"""
        await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        """Close underlying aiohttp session"""
        await self._http.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def url(self) -> str:
        """HTTP endpoint URL"""
        return self._http._url + self._http._path

    async def request(
        self,
        method: str,
        url: str,
        weight: int = 1,
        **kwargs: Any,
    ) -> Any:
        """Send arbitrary HTTP request"""
        return await self._http.request(method, url, weight, **kwargs)


class _HTTPGateway(AbstractAsyncContextManager[None]):
    """Wrapper for aiohttp HTTP requests.

    Covers ratelimiting and translation of transport failures. Each request is a single attempt."""

    def __init__(self, url: str, config: ResolvedHttpConfig) -> None:
        self._logger = logging.getLogger(__name__)
        parsed_url = urlsplit(url)
        self._url = urlunsplit((parsed_url.scheme, parsed_url.netloc, '', '', ''))
        self._alias = config.alias or parsed_url.netloc
        self._path = parsed_url.path
        if parsed_url.query:
            self._path += '?' + parsed_url.query
        self._config = config
        self._user_agent: str | None = None
        self._ratelimiter = (
            AsyncLimiter(max_rate=config.ratelimit_rate, time_period=config.ratelimit_period)
            if config.ratelimit_rate and config.ratelimit_period
            else None
        )
        self.__session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> None:
        """Create underlying aiohttp session"""
        self.__session = aiohttp.ClientSession(
            base_url=self._url,
            json_serialize=json_dumps_plain,
            connector=aiohttp.TCPConnector(limit=self._config.connection_limit),
            timeout=aiohttp.ClientTimeout(
                total=self._config.request_timeout,
                connect=self._config.connection_timeout,
            ),
        )

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        """Close underlying aiohttp session"""
        self._logger.debug('Closing gateway session (%s)', self._alias)
        if not self.__session:
            raise FrameworkException('Session is not initialized')
        await self.__session.close()

    @property
    def user_agent(self) -> str:
        """Return User-Agent header compiled from aiohttp's one and txnflow environment"""
        if self._user_agent is None:
            user_agent_args = (platform.system(), platform.machine())
            user_agent = f'txnflow/{__version__} ({"; ".join(user_agent_args)})'
            user_agent += ' ' + aiohttp.http.SERVER_SOFTWARE
            self._user_agent = user_agent
        return self._user_agent

    @property
    def _session(self) -> aiohttp.ClientSession:
        """Get an aiohttp session from inside of it's context manager"""
        if self.__session is None:
            raise FrameworkException('aiohttp session is not initialized. Wrap with `async with httpgateway_instance`')
        if self.__session.closed:
            raise FrameworkException('aiohttp session is closed')
        return self.__session

    def _resolve_path(self, url: str) -> str:
        if not url:
            return self._path or '/'
        if url.startswith('http'):
            return url.replace(self._url, '').rstrip('/')
        return f"{self._path.rstrip('/')}/{url}"

    async def _request(
        self,
        method: str,
        url: str,
        weight: int = 1,
        **kwargs: Any,
    ) -> Any:
        """Wrapped aiohttp call with preconfigured headers and ratelimiting"""
        path = self._resolve_path(url)
        headers = kwargs.pop('headers', {})
        headers['User-Agent'] = self.user_agent

        self._logger.debug('Calling `%s %s%s`', method.upper(), self._alias, path)

        if self._ratelimiter:
            await self._ratelimiter.acquire(weight)

        started_at = time.time()
        async with self._session.request(
            method=method,
            url=path,
            headers=headers,
            **kwargs,
        ) as response:
            body = await response.read()
            Metrics.set_rpc_request(self._alias, time.time() - started_at)

            if response.status != HTTPStatus.OK:
                Metrics.set_http_error(self._alias, response.status)
                text = body.decode(errors='replace')[:MAX_BODY_LENGTH]
                raise RPCTransportError(f'HTTP {response.status}: {text}', self._url + path)

            try:
                return orjson.loads(body)
            except orjson.JSONDecodeError as e:
                raise RPCTransportError(f'failed to decode response body: {e}', self._url + path) from e

    async def request(
        self,
        method: str,
        url: str,
        weight: int = 1,
        **kwargs: Any,
    ) -> Any:
        """Performs an HTTP request; network failures are raised as `RPCTransportError`"""
        try:
            return await self._request(method, url, weight, **kwargs)
        except safe_exceptions as e:
            Metrics.set_http_error(self._alias, 0)
            self._logger.warning('HTTP request to `%s` failed: %s', self._alias, repr(e))
            message = str(e) or e.__class__.__name__
            raise RPCTransportError(message, self._url + self._resolve_path(url)) from e
