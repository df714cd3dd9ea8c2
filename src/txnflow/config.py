"""Config files and environment variables.

All settings come from the environment (optionally loaded from `.env` files by the CLI). This module
contains the dataclasses validating them and the code to collect them.
"""

from __future__ import annotations

import logging
import os
from enum import Enum

from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic.dataclasses import dataclass

from txnflow import env
from txnflow.exceptions import ConfigurationError

DEFAULT_DATABASE_URL = 'postgres://localhost/txnflow'
RPC_URL_PREFIX = 'TXNFLOW_RPC_URL_'

_logger = logging.getLogger(__name__)


class ChainFamily(Enum):
    """Protocol family of a chain; defines which RPC client to use"""

    EVM = 'EVM'


@dataclass(frozen=True, kw_only=True)
class ChainConfig:
    """Chain config

    :param chain_id: Numeric chain ID
    :param name: Human-readable network name
    :param url: JSON-RPC endpoint URL
    :param family: Protocol family
    """

    chain_id: int
    name: str
    url: str
    family: ChainFamily = ChainFamily.EVM


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class HttpConfig:
    """Advanced configuration of HTTP client

    :param ratelimit_rate: Number of requests per period ("drops" in leaky bucket)
    :param ratelimit_period: Time period for rate limiting in seconds
    :param connection_limit: Number of simultaneous connections
    :param connection_timeout: Connection timeout in seconds
    :param request_timeout: Request timeout in seconds
    :param alias: Alias for this HTTP client (dev only)
    """

    ratelimit_rate: int | None = None
    ratelimit_period: int | None = None
    connection_limit: int | None = None
    connection_timeout: int | None = None
    request_timeout: int | None = None
    alias: str | None = None


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class ResolvedHttpConfig:
    __doc__ = HttpConfig.__doc__

    ratelimit_rate: int = 0
    ratelimit_period: int = 0
    connection_limit: int = 100
    connection_timeout: int = 10
    request_timeout: int = 10
    alias: str | None = None

    @classmethod
    def create(
        cls,
        default: HttpConfig,
        user: HttpConfig | None,
    ) -> ResolvedHttpConfig:
        config = cls()
        # NOTE: Apply client defaults first
        for merge_config in (default, user):
            if merge_config is None:
                continue
            for k, v in merge_config.__dict__.items():
                if v is not None:
                    setattr(config, k, v)
        return config


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class WorkerConfig:
    """Ingestion worker config

    :param poll_interval: Seconds between polling ticks
    :param batch_size: Maximum number of transactions processed per tick
    :param stale_after: Seconds after which a `FETCHING` transaction is failed as stale; 0 disables the check
    """

    poll_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=10, gt=0)
    stale_after: float = Field(default=0.0, ge=0)


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class TxnflowConfig:
    """Root config

    :param database_url: Tortoise ORM connection string
    :param infura_api_key: Infura project key used for Ethereum Mainnet
    :param rpc_urls: Per-chain RPC endpoint overrides
    :param worker: Ingestion worker config
    :param http: HTTP client config shared by all RPC clients
    :param metrics_port: Port of Prometheus exporter; 0 disables it
    :param sentry_dsn: Sentry DSN; empty disables error reporting
    """

    database_url: str = DEFAULT_DATABASE_URL
    infura_api_key: str = ''
    rpc_urls: dict[int, str] = Field(default_factory=dict)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    http: HttpConfig | None = None
    metrics_port: int = Field(default=0, ge=0, le=65535)
    sentry_dsn: str = ''

    @classmethod
    def from_env(cls) -> TxnflowConfig:
        """Collect config from environment variables"""
        try:
            return cls(
                database_url=env.get('DATABASE_URL', DEFAULT_DATABASE_URL),
                infura_api_key=env.get('INFURA_API_KEY'),
                rpc_urls=get_rpc_urls(),
                worker=WorkerConfig(
                    poll_interval=env.get_float('TXNFLOW_POLL_INTERVAL', 5.0),
                    batch_size=env.get_int('TXNFLOW_BATCH_SIZE', 10),
                    stale_after=env.get_float('TXNFLOW_STALE_AFTER', 0.0),
                ),
                http=HttpConfig(
                    request_timeout=env.get_int('TXNFLOW_RPC_TIMEOUT', 10),
                ),
                metrics_port=env.get_int('TXNFLOW_METRICS_PORT', 0),
                sentry_dsn=env.get('TXNFLOW_SENTRY_DSN'),
            )
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e


def get_rpc_urls() -> dict[int, str]:
    """Collect `TXNFLOW_RPC_URL_<CHAIN_ID>` variables"""
    rpc_urls: dict[int, str] = {}
    for key, value in os.environ.items():
        if not key.startswith(RPC_URL_PREFIX) or not value:
            continue
        suffix = key.removeprefix(RPC_URL_PREFIX)
        if not suffix.isdigit():
            raise ConfigurationError(f'`{key}`: chain ID must be a positive integer')
        _logger.debug('RPC endpoint override for chain %s', suffix)
        rpc_urls[int(suffix)] = value
    return rpc_urls
